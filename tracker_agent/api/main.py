"""FastAPI app exposing the tracker commands and a simple monitoring UI."""

from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse

from tracker_agent.agent import TrackerAgent
from tracker_agent.config import Settings
from tracker_agent.model.errors import ConfigError, TrackerError

MONITORING_PAGE = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Tracker Agent</title>
    <style>
        body { font-family: sans-serif; line-height: 1.6; padding: 20px; background-color: #f4f4f4; color: #333; }
        .container { max-width: 1200px; margin: auto; background: #fff; padding: 20px; border-radius: 8px; box-shadow: 0 0 10px rgba(0,0,0,0.1); }
        h1, h2 { color: #555; }
        .grid-container { display: grid; grid-template-columns: 1fr 1fr; gap: 20px; }
        .grid-item { background: #f9f9f9; padding: 15px; border-radius: 5px; }
        pre { background: #eee; padding: 10px; border-radius: 5px; white-space: pre-wrap; word-wrap: break-word; }
        #logs { height: 300px; overflow-y: scroll; border: 1px solid #ddd; padding: 10px; }
        .error { color: #b00020; } .warning { color: #a66300; } .success { color: #1b7f2a; }
        button { margin-right: 8px; }
    </style>
</head>
<body>
    <div class="container">
        <h1>Tracker Agent</h1>
        <div>
            <button onclick="command('/tracking/start')">Start</button>
            <button onclick="command('/tracking/pause')">Pause</button>
            <button onclick="command('/tracking/resume')">Resume</button>
            <button onclick="command('/tracking/stop')">Stop</button>
        </div>
        <div class="grid-container">
            <div class="grid-item">
                <h2>Current Activity</h2>
                <pre id="tracking">No data yet.</pre>
            </div>
            <div class="grid-item">
                <h2>Status</h2>
                <pre id="status">No data yet.</pre>
            </div>
            <div class="grid-item">
                <h2>Recent Events</h2>
                <pre id="events">No data yet.</pre>
            </div>
            <div class="grid-item">
                <h2>Logs</h2>
                <div id="logs"></div>
            </div>
        </div>
    </div>
    <script>
        async function command(path) {
            const response = await fetch(path, { method: 'POST' });
            if (!response.ok) {
                const body = await response.json();
                alert(body.detail);
            }
            fetchData();
        }

        async function fetchData() {
            try {
                const response = await fetch('/api/monitoring_data');
                const data = await response.json();

                document.getElementById('tracking').textContent = JSON.stringify(data.status.tracking, null, 2);
                const status = { ...data.status };
                delete status.tracking;
                document.getElementById('status').textContent = JSON.stringify(status, null, 2);
                document.getElementById('events').textContent = JSON.stringify(data.events, null, 2);

                const logsDiv = document.getElementById('logs');
                logsDiv.innerHTML = '';
                for (const log of data.logs) {
                    const div = document.createElement('div');
                    div.className = log.level;
                    div.textContent = `[${log.level}] ${log.message}`;
                    logsDiv.appendChild(div);
                }
                logsDiv.scrollTop = logsDiv.scrollHeight;
            } catch (error) {
                console.error('Error fetching monitoring data:', error);
            }
        }

        setInterval(fetchData, 3000);
        window.onload = fetchData;
    </script>
</body>
</html>
"""


def create_app(agent: TrackerAgent | None = None) -> FastAPI:
    """FastAPIアプリを作る. agent を省略すると起動時に生成する."""
    app = FastAPI(
        title="Tracker Agent",
        description="Screen activity tracking synced to a task service",
    )
    app.state.agent = agent

    def get_agent(request: Request) -> TrackerAgent:
        current: TrackerAgent | None = request.app.state.agent
        if current is None:
            raise HTTPException(status_code=503, detail="Agent not started")
        return current

    # --- アプリケーションのライフサイクルイベント ---

    # Deprecated on_event usage is temporarily retained for simplicity.
    @app.on_event("startup")  # pyright: ignore[reportDeprecated]
    async def startup_event() -> None:
        if app.state.agent is None:
            app.state.agent = TrackerAgent()
        app.state.agent.startup()

    @app.on_event("shutdown")  # pyright: ignore[reportDeprecated]
    async def shutdown_event() -> None:
        if app.state.agent is not None:
            app.state.agent.shutdown()

    # --- コマンド ---

    @app.post("/tracking/start")
    def start_tracking(request: Request) -> dict[str, Any]:
        try:
            get_agent(request).start_tracking()
        except ConfigError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except TrackerError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return {"ok": True}

    @app.post("/tracking/stop")
    def stop_tracking(request: Request) -> dict[str, Any]:
        get_agent(request).stop_tracking()
        return {"ok": True}

    @app.post("/tracking/pause")
    def pause_tracking(request: Request) -> dict[str, Any]:
        try:
            get_agent(request).pause_tracking()
        except TrackerError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return {"ok": True}

    @app.post("/tracking/resume")
    def resume_tracking(request: Request) -> dict[str, Any]:
        try:
            get_agent(request).resume_tracking()
        except TrackerError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return {"ok": True}

    @app.post("/settings")
    def save_settings(settings: Settings, request: Request) -> dict[str, Any]:
        """設定を保存する. 不正な値はFastAPIが422を返す."""
        get_agent(request).save_settings(settings)
        return {"ok": True}

    @app.get("/settings")
    def get_settings(request: Request) -> dict[str, Any]:
        return get_agent(request).settings.masked()

    # --- 状態取得 ---

    @app.get("/status")
    def get_status(request: Request) -> dict[str, Any]:
        return get_agent(request).status()

    @app.get("/notifications")
    def get_notifications(request: Request) -> list[dict[str, Any]]:
        """未読の通知を古い順に返す."""
        return get_agent(request).emitter.drain()

    @app.get("/api/monitoring_data")
    def get_monitoring_data(request: Request) -> dict[str, Any]:
        current = get_agent(request)
        return {
            "status": current.status(),
            "events": [
                {
                    "timestamp": event.timestamp,
                    "application": event.application_hint,
                    "activity": event.activity_label,
                    "confidence": event.confidence,
                    "task": event.matched_task.title if event.matched_task else None,
                }
                for event in current.event_log.recent(10)
            ],
            "logs": current.emitter.recent_logs(),
        }

    @app.get("/monitoring", response_class=HTMLResponse)
    async def get_monitoring_page() -> HTMLResponse:
        return HTMLResponse(content=MONITORING_PAGE)

    return app


app = create_app()
