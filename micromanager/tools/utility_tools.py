"""Small tools that need no user data."""

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

from micromanager.tools.base import ToolContext, ToolDefinition


class GetWeatherInput(BaseModel):
    """Input schema for the weather lookup."""

    city: str = Field(..., min_length=1, max_length=100, description="City name")


class GetCurrentTimeInput(BaseModel):
    """Input schema for the current time lookup."""

    timezone: str = Field("UTC", description="IANA timezone name, e.g. 'Europe/Berlin'")

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone '{v}'") from e
        return v


def create_get_weather_tool() -> ToolDefinition:
    async def get_weather_handler(params: GetWeatherInput, context: ToolContext) -> str:
        # Canned answer, no weather provider is wired in
        return f"The weather in {params.city} is sunny and 25 degrees Celsius."

    return ToolDefinition(
        name="get_weather",
        description="Get the current weather for a city.",
        input_schema_class=GetWeatherInput,
        handler=get_weather_handler,
    )


def create_get_current_time_tool() -> ToolDefinition:
    async def get_current_time_handler(params: GetCurrentTimeInput, context: ToolContext) -> str:
        now = datetime.now(ZoneInfo(params.timezone))
        return f"{now.strftime('%A, %Y-%m-%d %H:%M:%S')} ({params.timezone})"

    return ToolDefinition(
        name="get_current_time",
        description="Get the current date and time in a timezone.",
        input_schema_class=GetCurrentTimeInput,
        handler=get_current_time_handler,
    )
