"""Basic usage examples for the OpenWeather client."""

import asyncio
import os

from openweather import (
    OpenWeatherClient,
    OpenWeatherRateLimitError,
    RefreshScheduler,
    Settings,
    VisibilitySignal,
)


async def current_example(client: OpenWeatherClient) -> None:
    """Get current weather, then get it again from cache."""
    result = await client.get_current("Paris")
    print("=== Current Weather ===")
    print(f"Paris: {result.data['main']['temp']}°C (cached: {result.came_from_cache})")

    again = await client.get_current("Paris")
    print(f"Again: cached={again.came_from_cache}, age={again.age_seconds}s")
    print()


async def search_example(client: OpenWeatherClient) -> None:
    """Search-as-you-type."""
    print("=== City Search ===")
    for prefix in ["P", "Po", "Port"]:
        matches = await client.search_cities(prefix)
        print(f"{prefix!r}: {[m.display for m in matches]}")
    print()


async def forecast_example(client: OpenWeatherClient) -> None:
    """Get forecast and summarize it per day (requires pandas)."""
    from openweather.dataframe import daily_summary, forecast_to_dataframe

    result = await client.get_forecast("Tokyo")
    print("=== Forecast ===")
    print(daily_summary(forecast_to_dataframe(result.data)))
    print()


async def auto_refresh_example(client: OpenWeatherClient) -> None:
    """Refresh displayed cities every 5 seconds for 12 seconds."""
    displayed = ["Paris", "Tokyo"]
    visibility = VisibilitySignal()

    async def refresh() -> None:
        results = await client.refresh(lambda: displayed)
        for (kind, city), outcome in results.items():
            if isinstance(outcome, OpenWeatherRateLimitError):
                print(f"{kind.value} {city}: please wait {outcome.retry_after:.0f}s")
            elif isinstance(outcome, Exception):
                print(f"{kind.value} {city}: failed ({outcome})")
            else:
                print(f"{kind.value} {city}: ok")

    print("=== Auto Refresh ===")
    async with RefreshScheduler(visibility) as scheduler:
        scheduler.arm(refresh, 5)
        await asyncio.sleep(12)
    print(client.stats())


async def main() -> None:
    settings = Settings.from_env()
    if not settings.api_key:
        print("Set OPENWEATHER_API_KEY to run the examples.")
        return

    async with OpenWeatherClient.from_settings(settings) as client:
        await current_example(client)
        await search_example(client)
        await forecast_example(client)
        if os.environ.get("OPENWEATHER_DEMO_REFRESH"):
            await auto_refresh_example(client)


if __name__ == "__main__":
    asyncio.run(main())
