#!/usr/bin/env python3
"""
Academy Calls アプリケーションエントリーポイント

このモジュールはアプリケーションのメインエントリーポイントです。
.env と環境変数から設定を読み込み、コンポーネントを初期化し、
生存監視タスクと発信予約タスクを開始してから Flask 開発サーバーを起動します。

Usage:
    python main.py

Environment Variables (Required, SIMULATE_PROVIDER=true の場合は不要):
    - TWILIO_ACCOUNT_SID: Twilio アカウント SID
    - TWILIO_AUTH_TOKEN: Twilio 認証トークン
    - TWILIO_PHONE_NUMBER: 発信元の Twilio 電話番号
    - WEBHOOK_BASE_URL: Webhook のベース URL

Environment Variables (Optional):
    - TWILIO_API_KEY / TWILIO_API_SECRET: ビデオトークン用 API キー
    - SIMULATE_PROVIDER: Twilio を使わずにローカルで動作させる (デフォルト: false)
    - RECORD_CALLS: 通話を録音する (デフォルト: false)
    - SCHEDULE_CHECK_INTERVAL: 発信予約を確認する間隔 (秒, デフォルト: 30)
    - LOG_LEVEL: ログレベル (デフォルト: INFO)
    - HOST: サーバーホスト (デフォルト: 0.0.0.0)
    - PORT: サーバーポート (デフォルト: 5000)
    - DEBUG: デバッグモード (デフォルト: False)
"""

import os
import sys

from dotenv import load_dotenv

from academy_calls.app import create_app
from academy_calls.config import Config, ConfigurationError


def main() -> int:
    """
    アプリケーションのメインエントリーポイント

    Returns:
        int: 終了コード (0: 正常終了, 1: エラー終了)
    """
    monitor = None
    scheduler = None
    try:
        load_dotenv()

        print("設定を読み込んでいます...")
        config = Config.from_env()
        print("設定の読み込みが完了しました。")
        if config.simulate_provider:
            print("シミュレーションモードで起動します (Twilio には接続しません)。")

        print("アプリケーションを初期化しています...")
        app = create_app(config)
        print("アプリケーションの初期化が完了しました。")

        # ハートビート・通話レコード掃除・着信タイムアウトを開始
        monitor = app.config["LIVENESS_MONITOR"]
        monitor.start()

        scheduler = app.config["CALL_SCHEDULER"]
        scheduler.start()

        host = os.environ.get("HOST", "0.0.0.0")
        port = int(os.environ.get("PORT", "5000"))
        debug = os.environ.get("DEBUG", "").lower() in ("true", "1", "yes")

        print(f"サーバーを起動しています... (host={host}, port={port}, debug={debug})")
        print(f"Webhook URL: {config.webhook_base_url}")
        print(f"プッシュチャネル: ws://{host}:{port}/ws")
        print("サーバーを停止するには Ctrl+C を押してください。")

        # リローダーはバックグラウンドタスクを二重に起動するため無効にする
        app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)

        return 0

    except ConfigurationError as e:
        print(f"\n[エラー] 設定エラーが発生しました:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        print("\n必要な環境変数を設定してから再度実行してください。", file=sys.stderr)
        print("\n必須の環境変数:", file=sys.stderr)
        print("  - TWILIO_ACCOUNT_SID: Twilio アカウント SID", file=sys.stderr)
        print("  - TWILIO_AUTH_TOKEN: Twilio 認証トークン", file=sys.stderr)
        print("  - TWILIO_PHONE_NUMBER: 発信元の Twilio 電話番号", file=sys.stderr)
        print("  - WEBHOOK_BASE_URL: Webhook のベース URL", file=sys.stderr)
        print("\nローカルで試す場合は SIMULATE_PROVIDER=true を設定してください。", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        print("\nサーバーを停止しました。")
        return 0

    except Exception as e:
        print(f"\n[エラー] 予期しないエラーが発生しました:", file=sys.stderr)
        print(f"  {type(e).__name__}: {e}", file=sys.stderr)
        return 1

    finally:
        if scheduler is not None:
            scheduler.stop()
        if monitor is not None:
            monitor.stop()


if __name__ == "__main__":
    sys.exit(main())
