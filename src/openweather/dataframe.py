"""DataFrame conversion for OpenWeatherMap forecast payloads.

Turns the raw 5-day / 3-hour forecast (as returned by
OpenWeatherClient.get_forecast) into pandas DataFrames ready for
charting: one row per forecast step, and a per-day summary.

Requirements:
    pandas >= 2.0 must be installed. Install with:
        pip install pandas
    Or install openweather with the pandas extra:
        pip install openweather[pandas]

Example:
    >>> from openweather.dataframe import daily_summary, forecast_to_dataframe
    >>> result = await client.get_forecast("Paris")
    >>> df = forecast_to_dataframe(result.data)
    >>> df[["time", "temp", "pop"]].head(8)
    >>> daily_summary(df)
"""

from typing import Any


def _check_pandas() -> None:
    """Check if pandas is installed and raise informative error if not."""
    try:
        import pandas  # noqa: F401
    except ImportError as e:
        raise ImportError(
            "pandas is required for DataFrame conversion. "
            "Install it with: pip install pandas"
        ) from e


FORECAST_COLUMNS = [
    "time",
    "temp",
    "feels_like",
    "temp_min",
    "temp_max",
    "humidity",
    "pressure",
    "pop",
    "wind_speed",
    "wind_deg",
    "description",
    "icon",
]


def _row(item: dict[str, Any]) -> dict[str, Any]:
    main = item.get("main") or {}
    wind = item.get("wind") or {}
    weather = (item.get("weather") or [{}])[0]
    return {
        "time": item.get("dt"),
        "temp": main.get("temp"),
        "feels_like": main.get("feels_like"),
        "temp_min": main.get("temp_min"),
        "temp_max": main.get("temp_max"),
        "humidity": main.get("humidity"),
        "pressure": main.get("pressure"),
        "pop": item.get("pop", 0.0),
        "wind_speed": wind.get("speed"),
        "wind_deg": wind.get("deg"),
        "description": weather.get("description"),
        "icon": weather.get("icon"),
    }


def forecast_to_dataframe(payload: dict[str, Any]) -> "pd.DataFrame":
    """Convert a forecast payload to one row per 3-hour step.

    Args:
        payload: Raw /forecast response (must contain "list").

    Returns:
        DataFrame with FORECAST_COLUMNS. ``time`` is a UTC datetime
        column, ``pop`` is the probability of precipitation in [0, 1],
        wind speed is in m/s (metric units).

    Raises:
        ImportError: If pandas is not installed.
        ValueError: If the payload has no "list" of forecast steps.
    """
    _check_pandas()
    import pandas as pd

    items = payload.get("list") if isinstance(payload, dict) else None
    if items is None:
        raise ValueError("Forecast payload has no 'list' of forecast steps")

    df = pd.DataFrame([_row(item) for item in items], columns=FORECAST_COLUMNS)
    df["time"] = pd.to_datetime(df["time"], unit="s", utc=True)
    df["pop"] = df["pop"].fillna(0.0)
    return df


def daily_summary(df: "pd.DataFrame", days: int = 7) -> "pd.DataFrame":
    """Group forecast steps by calendar day (UTC).

    Args:
        df: Output of forecast_to_dataframe().
        days: Maximum number of days to return.

    Returns:
        DataFrame indexed by date with ``temp_max``, ``temp_min`` and
        ``pop_max`` (probability of precipitation, in percent), plus the
        ``description`` and ``icon`` of the middle step of each day.
    """
    _check_pandas()
    import pandas as pd

    if df.empty:
        return pd.DataFrame(
            columns=["temp_max", "temp_min", "pop_max", "description", "icon"]
        )

    grouped = df.groupby(df["time"].dt.date, sort=True)
    summary = pd.DataFrame(
        {
            "temp_max": grouped["temp"].max(),
            "temp_min": grouped["temp"].min(),
            "pop_max": grouped["pop"].max() * 100,
            "description": grouped["description"].agg(lambda s: s.iloc[len(s) // 2]),
            "icon": grouped["icon"].agg(lambda s: s.iloc[len(s) // 2]),
        }
    )
    summary.index.name = "date"
    return summary.head(days)


__all__ = ["forecast_to_dataframe", "daily_summary"]
