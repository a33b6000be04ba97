"""
Weather tool: current conditions from the Open-Meteo forecast API.
No API key required.
"""

import logging

import httpx

logger = logging.getLogger(__name__)

FORECAST_URL = "https://api.open-meteo.com/v1/forecast"


class WeatherTool:
    name = "get_weather"
    description = "Get the current weather at a location"
    parameters = {
        "type": "object",
        "properties": {
            "latitude": {"type": "number"},
            "longitude": {"type": "number"},
        },
        "required": ["latitude", "longitude"],
    }

    def __init__(self, timeout: float = 10.0, url: str = FORECAST_URL):
        self.timeout = timeout
        self.url = url

    async def execute(self, arguments: dict, context) -> dict:
        params = {
            "latitude": float(arguments["latitude"]),
            "longitude": float(arguments["longitude"]),
            "current": "temperature_2m",
            "hourly": "temperature_2m",
            "daily": "sunrise,sunset",
            "timezone": "auto",
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(self.url, params=params)
            resp.raise_for_status()
            return resp.json()
