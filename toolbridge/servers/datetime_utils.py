"""
Date/time tool server.

Launch:
    python -m toolbridge.servers.datetime_utils
"""

from datetime import datetime, timezone
from email.utils import format_datetime

from toolbridge.catalog import ToolHandler
from toolbridge.server import ToolServer, run_server


class CurrentUtcTimeTool(ToolHandler):
    name = "get_current_utc_time"
    description = "Returns the current date and time in UTC (RFC 1123)."
    parameters = {}

    def handle(self, params: dict) -> dict:
        now = datetime.now(timezone.utc)
        return {"utc": format_datetime(now, usegmt=True)}


if __name__ == "__main__":
    server = ToolServer(name="datetime")
    server.register(CurrentUtcTimeTool())
    run_server(server)
