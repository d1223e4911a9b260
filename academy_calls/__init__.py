"""
Academy Calls

Twilio を使用したアカデミー向け通話・SMS システム
通話状態をリアルタイムにブラウザへ同期します。
"""

__version__ = "0.1.0"

from academy_calls.config import Config, ConfigurationError
from academy_calls.app import create_app

__all__ = ["Config", "ConfigurationError", "create_app"]
