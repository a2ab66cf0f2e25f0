"""
Weather tool server — reference implementation.

Returns canned conditions so clients and planners can be exercised without
a real weather service.

Launch:
    python -m toolbridge.servers.weather
    python -m toolbridge.servers.weather --tcp 127.0.0.1:5057

Test manually:
    printf '%s\n' \
      '{"jsonrpc":"2.0","method":"initialize","params":{"clientInfo":{"name":"sh","version":"0"}}}' \
      '{"jsonrpc":"2.0","method":"tools/call","params":{"name":"get_weather","arguments":{"city":"Boston"}},"id":1}' \
      | python -m toolbridge.servers.weather
"""

from toolbridge.catalog import ToolHandler
from toolbridge.server import ToolServer, run_server

CONDITIONS = {
    "boston": "rainy",
    "london": "cloudy",
    "seattle": "rainy",
    "phoenix": "sunny",
    "miami": "sunny",
    "chicago": "windy",
    "denver": "snowy",
}


class GetWeatherTool(ToolHandler):
    name = "get_weather"
    description = "Gets the current weather condition for a city."
    parameters = {
        "city": {"type": "string", "description": "The city name, e.g. 'Boston'"},
    }

    def handle(self, params: dict) -> dict:
        city = params["city"].strip()
        return {"condition": CONDITIONS.get(city.lower(), "unknown")}


if __name__ == "__main__":
    server = ToolServer(name="weather")
    server.register(GetWeatherTool())
    run_server(server)
