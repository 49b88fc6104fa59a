"""Geographic selection of playback nodes.

Ranks cluster members by great-circle distance from this tester instance.
Members sharing a location are kept together: the selection takes whole
location groups, nearest first, until it holds at least the requested number
of members, so co-located replicas are never split across the cut line and
the last group may push the result over the requested count.
"""

from __future__ import annotations

import asyncio
import math
import random
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from streamtester.errors import TransientNetworkError

logger = structlog.get_logger()

EARTH_RADIUS_KM = 6371.0

# Decimal places kept when grouping members by location (~11 m)
LOCATION_KEY_PRECISION = 4

MEMBERSHIP_RETRY_DELAYS = [0.5, 1.0, 2.0]
MEMBERSHIP_TIMEOUT = 5.0


@dataclass(frozen=True)
class GeoNode:
    """A candidate endpoint tagged with its location.

    Attributes:
        name: Member name.
        address: Host or host:port used to reach the member.
        tags: Member tags; ``latitude``/``longitude`` hold the location as
            strings exactly as the membership source reported them.
    """

    name: str
    address: str
    tags: dict[str, str] = field(default_factory=dict, hash=False)

    @property
    def latitude(self) -> str:
        return self.tags.get("latitude", "")

    @property
    def longitude(self) -> str:
        return self.tags.get("longitude", "")


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres between two points in degrees."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    )
    # Rounding can push a a hair past 1 for antipodal points
    a = min(1.0, max(0.0, a))
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _parse_coordinate(value: str) -> float | None:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(parsed):
        return None
    return parsed


@dataclass
class _LocationGroup:
    key: tuple[Any, ...]
    distance: float
    nodes: list[GeoNode] = field(default_factory=list)


def _group_by_location(
    candidates: Iterable[GeoNode], origin: tuple[float, float]
) -> list[_LocationGroup]:
    groups: dict[tuple[Any, ...], _LocationGroup] = {}
    for node in candidates:
        lat = _parse_coordinate(node.latitude)
        lon = _parse_coordinate(node.longitude)
        if lat is None or lon is None:
            key: tuple[Any, ...] = ("unparsed", node.latitude, node.longitude)
            distance = math.nan
        else:
            key = (
                round(lat, LOCATION_KEY_PRECISION),
                round(lon, LOCATION_KEY_PRECISION),
            )
            distance = haversine_distance(origin[0], origin[1], key[0], key[1])

        group = groups.get(key)
        if group is None:
            group = groups[key] = _LocationGroup(key=key, distance=distance)
        group.nodes.append(node)
    return list(groups.values())


def select_closest_nodes(
    candidates: Iterable[GeoNode],
    origin: tuple[float, float],
    want_count: int,
) -> list[GeoNode]:
    """Select the nodes nearest to ``origin``.

    Args:
        candidates: Nodes to choose from.
        origin: (latitude, longitude) of this tester in degrees.
        want_count: Minimum number of nodes wanted.

    Returns:
        Nodes ordered by non-decreasing distance. Whole location groups are
        taken until at least ``want_count`` nodes are selected, or all nodes
        when fewer exist. Nodes with unparseable coordinates sort last.
    """
    if want_count <= 0:
        return []

    groups = _group_by_location(candidates, origin)
    # sorted() is stable, so equal distances keep first-seen order
    groups.sort(key=lambda g: (math.isnan(g.distance), g.distance))

    selected: list[GeoNode] = []
    for group in groups:
        if len(selected) >= want_count:
            break
        selected.extend(group.nodes)
    return selected


def pick_playback_nodes(
    nodes: Sequence[GeoNode],
    pull_count: int,
    randomize: bool = False,
    rng: random.Random | None = None,
) -> list[GeoNode]:
    """Choose which selected nodes to pull playback from.

    Takes the first ``pull_count`` nodes, or a random sample of them when
    ``randomize`` is set.
    """
    count = max(0, min(pull_count, len(nodes)))
    if randomize:
        return (rng or random).sample(list(nodes), count)
    return list(nodes[:count])


class HttpMembershipSource:
    """Fetches cluster members from an HTTP endpoint.

    The endpoint returns a JSON list of members, each with ``name``,
    ``addr``, ``status`` and a ``tags`` object holding ``latitude`` and
    ``longitude``. Only members with status ``alive`` are returned.
    """

    def __init__(
        self,
        url: str,
        timeout: float = MEMBERSHIP_TIMEOUT,
        retry_delays: list[float] | None = None,
    ) -> None:
        self.url = url
        self._timeout = timeout
        self._retry_delays = (
            MEMBERSHIP_RETRY_DELAYS if retry_delays is None else list(retry_delays)
        )

    async def members(self) -> list[GeoNode]:
        log = logger.bind(url=self.url)
        last_error: Exception | None = None

        for attempt in range(len(self._retry_delays) + 1):
            try:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(self.url)
                response.raise_for_status()
                nodes = [
                    GeoNode(
                        name=m.get("name", ""),
                        address=m.get("addr", ""),
                        tags=dict(m.get("tags") or {}),
                    )
                    for m in response.json()
                    if m.get("status", "alive") == "alive"
                ]
                log.info("membership_fetched", count=len(nodes))
                return nodes
            except (httpx.TransportError, httpx.HTTPStatusError) as e:
                last_error = e
                log.warning("membership_fetch_failed", attempt=attempt + 1, error=str(e))

            if attempt < len(self._retry_delays):
                await asyncio.sleep(self._retry_delays[attempt])

        raise TransientNetworkError(
            f"failed to fetch cluster members from {self.url}: {last_error}"
        ) from last_error
