from __future__ import annotations

from typing import Any

from app.competitors.base import CompetitorCollector
from app.competitors.html import HtmlCompetitorCollector
from app.competitors.static import StaticCompetitorCollector
from app.settings import settings


def get_competitor_collector(source: dict[str, Any]) -> CompetitorCollector:
    kind = str(source.get("type") or "html").strip().lower()
    if kind == "static":
        return StaticCompetitorCollector(name=source["name"], prices=source.get("prices") or {}, url=source.get("url"))
    return HtmlCompetitorCollector(
        name=source["name"],
        search_url=source["search_url"],
        price_selector=source["price_selector"],
        link_selector=source.get("link_selector"),
    )


def get_competitor_collectors(sources: list[dict[str, Any]] | None = None) -> list[CompetitorCollector]:
    configured = settings.competitor_sources if sources is None else sources
    return [get_competitor_collector(source) for source in configured]
