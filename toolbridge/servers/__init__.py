"""Reference tool providers."""

from toolbridge.server import ToolServer


def build_server() -> ToolServer:
    """A server exposing every reference tool."""
    # Imported here so `python -m toolbridge.servers.<module>` runs cleanly
    from toolbridge.servers.datetime_utils import CurrentUtcTimeTool
    from toolbridge.servers.weather import GetWeatherTool

    server = ToolServer(name="toolbridge-reference")
    server.register(CurrentUtcTimeTool())
    server.register(GetWeatherTool())
    return server
