"""Current date and time tool."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from streamchat.ai.tools.base import Tool


class CurrentTimeTool(Tool):
    @property
    def name(self) -> str:
        return "current_time"

    @property
    def description(self) -> str:
        return (
            "Get the current date and time. Optionally pass an IANA timezone "
            "name such as 'Europe/Berlin'; defaults to UTC."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "timezone": {
                    "type": "string",
                    "description": "IANA timezone name, e.g. 'Asia/Seoul'",
                },
            },
        }

    async def execute(self, **kwargs: Any) -> str:
        tz_name = kwargs.get("timezone") or "UTC"
        try:
            tz = timezone.utc if tz_name == "UTC" else ZoneInfo(tz_name)
        except ZoneInfoNotFoundError:
            raise ValueError(f"unknown timezone: {tz_name}")
        now = datetime.now(tz)
        return f"{now.isoformat(timespec='seconds')} ({tz_name}, {now.strftime('%A')})"
