"""Command line entry point."""

from tracker_agent.config import load_local_env


def main() -> None:
    """メイン関数."""
    import argparse

    parser = argparse.ArgumentParser(description="Tracker Agent")
    parser.add_argument("--host", default="127.0.0.1", help="UIサーバーのホスト")
    parser.add_argument("--port", type=int, default=5577, help="UIサーバーのポート")
    parser.add_argument(
        "--env-file", default=".env.local", help="読み込む環境変数ファイル"
    )
    parser.add_argument(
        "--start", action="store_true", help="起動と同時にトラッキングを開始"
    )
    args = parser.parse_args()

    # ログ出力先などを環境変数で決めるため、importより先に読み込む
    load_local_env(args.env_file)

    import uvicorn

    from tracker_agent.agent import TrackerAgent
    from tracker_agent.api.main import create_app

    agent = TrackerAgent()
    app = create_app(agent)
    if args.start:

        @app.on_event("startup")  # pyright: ignore[reportDeprecated]
        async def start_tracking_on_boot() -> None:
            agent.start_tracking()

    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
