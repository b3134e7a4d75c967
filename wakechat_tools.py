"""Tool functions the chat model can call.

A ToolRegistry maps tool names to handlers and exposes their JSON schemas in
the shape the chat-completions API expects:

    [{"type": "function", "function": {"name", "description", "parameters"}}]

Registration happens once at start-up; after ``freeze()`` the registry is
read-only and shared by every connection.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Protocol

import httpx

logger = logging.getLogger(__name__)

OPENWEATHER_URL = os.getenv(
    "OPENWEATHER_URL", "https://api.openweathermap.org/data/2.5/weather"
)
WEATHER_TIMEOUT_SEC = 10.0


# ── Errors ───────────────────────────────────────────────────────────────────

class ToolExecutionError(Exception):
    """A tool call failed. Reported back to the model, never fatal to a turn."""


class UnknownToolError(ToolExecutionError):
    pass


class WeatherError(ToolExecutionError):
    pass


# ── Registry ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))

    def schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters),
            },
        }


class Tool(Protocol):
    definition: ToolDefinition

    async def execute(self, args: dict) -> Any: ...


class ToolRegistry:
    """Name → tool lookup with schema export."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}
        self._frozen = False

    def register(self, tool: Tool) -> None:
        if self._frozen:
            raise RuntimeError("Tool registry is frozen")
        name = tool.definition.name
        if name in self._tools:
            raise ValueError(f"Tool {name!r} is already registered")
        self._tools[name] = tool
        logger.debug("Registered tool %s", name)

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict]:
        return [tool.definition.schema() for tool in self._tools.values()]

    async def execute(self, name: str, args: dict) -> Any:
        """Run a tool. Any failure surfaces as ToolExecutionError."""
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(f"Function {name} not found")
        try:
            return await tool.execute(args)
        except ToolExecutionError:
            raise
        except Exception as e:
            raise ToolExecutionError(f"{name} failed: {e}") from e


# ── get_weather ──────────────────────────────────────────────────────────────

class WeatherTool:
    """Current conditions for a city from OpenWeatherMap."""

    definition = ToolDefinition(
        name="get_weather",
        description="Get the current weather forecast for a specific city",
        parameters={
            "type": "object",
            "properties": {
                "city": {
                    "type": "string",
                    "description": "The city to get weather for",
                },
            },
            "required": ["city"],
        },
    )

    def __init__(
        self,
        api_key: str | None = None,
        *,
        url: str = OPENWEATHER_URL,
        client: httpx.AsyncClient | None = None,
        timeout: float = WEATHER_TIMEOUT_SEC,
    ):
        self.api_key = api_key if api_key is not None else os.getenv("OPENWEATHER_API_KEY", "")
        self.url = url
        self._client = client
        self._timeout = timeout

    async def execute(self, args: dict) -> dict:
        city = str(args.get("city", "")).strip()
        if not city:
            raise WeatherError("city is required")
        if not self.api_key:
            raise WeatherError("Weather API key is not configured")

        params = {"q": city, "appid": self.api_key, "units": "metric"}
        try:
            if self._client is not None:
                resp = await self._client.get(self.url, params=params, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.get(self.url, params=params)
        except httpx.HTTPError as e:
            raise WeatherError(f"Weather service unreachable: {e}") from e

        if resp.status_code != 200:
            message = _upstream_message(resp)
            logger.warning("Weather lookup for %s failed: %d %s", city, resp.status_code, message)
            raise WeatherError(f"Weather lookup failed for {city}: {message}")

        data = resp.json()
        main = data.get("main", {})
        weather = data.get("weather") or [{}]
        return {
            "city": data.get("name", city),
            "temperature": main.get("temp"),
            "condition": weather[0].get("description", ""),
            "humidity": main.get("humidity"),
            "windSpeed": data.get("wind", {}).get("speed"),
        }


def _upstream_message(resp: httpx.Response) -> str:
    try:
        return str(resp.json().get("message", resp.reason_phrase))
    except ValueError:
        return resp.reason_phrase or f"HTTP {resp.status_code}"


def default_registry(weather_api_key: str | None = None) -> ToolRegistry:
    """Registry with the built-in tools, frozen."""
    registry = ToolRegistry()
    registry.register(WeatherTool(weather_api_key))
    return registry.freeze()
