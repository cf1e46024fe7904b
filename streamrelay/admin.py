from typing import Any, Dict, TYPE_CHECKING
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST
from streamrelay.utils.logging import get_logger

if TYPE_CHECKING:
    from streamrelay.relay import Relay

logger = get_logger("AdminAPI")


def create_admin_app(relay: "Relay") -> FastAPI:
    """
    Creates the FastAPI Admin Application.

    Args:
        relay: The active Relay instance to report on.
    """
    app = FastAPI(title="Stream Relay Admin API", version="0.1.0")

    @app.get("/health")
    async def health_check(response: Response) -> Dict[str, str]:
        """Returns the health status of the relay."""
        if relay.failed.is_set():
            response.status_code = 503
            return {"status": "failed", "relay_state": relay.state.value}
        if relay.running:
            return {"status": "ok", "relay_state": relay.state.value}
        return {"status": "stopped", "relay_state": relay.state.value}

    @app.get("/control/status")
    async def relay_status() -> Dict[str, Any]:
        """Detailed status of the relay."""
        return relay.status()

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=relay.metrics.render(), media_type=CONTENT_TYPE_LATEST)

    return app
