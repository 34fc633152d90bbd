"""
Report parser for JMA municipality-level warning reports (VPWW54).

A report has three sections:
- Control: administrative metadata (exposed, not used for state)
- Head: title, report time, info type
- Body: zero or more per-city warning blocks

City blocks come in two tag families, ``Warning`` and ``Information``,
which are normalized into the same CityObservation shape. The region-wide
"no warnings" sentinel becomes a single NoWarningsInRegion observation.
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .errors import MalformedReport, UnrecognizedCity

logger = logging.getLogger(__name__)

# Block type for municipality-level entries; the brackets are full-width
CITY_BLOCK_TYPE = "気象警報・注意報（市町村等）"
CITY_LEVEL_MARKER = "市町村等"
BLOCK_TAGS = ("Warning", "Information")

NO_WARNINGS_TEXT = "発表警報・注意報はなし"


class WarningStatus(Enum):
    """Canonical warning status."""
    ISSUED = "issued"
    CONTINUED = "continued"
    CLEARED = "cleared"


STATUS_MAP: Dict[str, WarningStatus] = {
    "発表": WarningStatus.ISSUED,
    "継続": WarningStatus.CONTINUED,
    "解除": WarningStatus.CLEARED,
    # Kind changes: the kind named in the block is new for the city
    "注意報から警報": WarningStatus.ISSUED,
    "警報から注意報": WarningStatus.ISSUED,
    "警報から特別警報": WarningStatus.ISSUED,
    "特別警報から警報": WarningStatus.ISSUED,
    "注意報から特別警報": WarningStatus.ISSUED,
    "特別警報から注意報": WarningStatus.ISSUED,
}


@dataclass(frozen=True)
class CityObservation:
    """Warning status of one kind for one city, as seen in one report."""
    city: str
    kind: str
    status: WarningStatus
    raw_status: str
    kind_code: str = ""


@dataclass(frozen=True)
class NoWarningsInRegion:
    """The region reports no warnings or advisories in effect."""
    raw_status: str = NO_WARNINGS_TEXT


Observation = Union[CityObservation, NoWarningsInRegion]


@dataclass
class ReportMeta:
    """Control and head metadata of a report."""
    control_title: str = ""
    control_datetime: str = ""
    publishing_office: str = ""
    head_title: str = ""
    report_datetime: str = ""
    info_type: str = ""


@dataclass
class ParsedReport:
    meta: ReportMeta
    observations: List[Observation]
    skipped_blocks: int = 0
    unmapped_statuses: List[str] = field(default_factory=list)

    @property
    def is_all_clear(self) -> bool:
        return len(self.observations) == 1 and isinstance(self.observations[0], NoWarningsInRegion)


def map_status(raw: str) -> Optional[WarningStatus]:
    """Map source status text to a canonical status, None when unknown."""
    return STATUS_MAP.get(raw.strip())


def _local(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _children(elem: ET.Element, name: str) -> Iterator[ET.Element]:
    for child in elem:
        if _local(child.tag) == name:
            yield child


def _child(elem: ET.Element, name: str) -> Optional[ET.Element]:
    return next(_children(elem, name), None)


def _text(elem: Optional[ET.Element], *path: str) -> str:
    for name in path:
        if elem is None:
            return ""
        elem = _child(elem, name)
    if elem is None or elem.text is None:
        return ""
    return elem.text.strip()


class ReportParser:
    """
    Parses one report document into per-city warning observations.

    Output is a pure function of the input bytes. Unknown city bracket
    conventions skip the block with a warning; unknown status text is kept
    verbatim and treated as continued.
    """

    def __init__(self, city_block_type: str = CITY_BLOCK_TYPE):
        self.city_block_type = city_block_type

    def parse(self, content: bytes) -> ParsedReport:
        try:
            root = ET.fromstring(content)
        except ET.ParseError as e:
            raise MalformedReport(f"Report XML is malformed: {e}")

        head = _child(root, "Head")
        body = _child(root, "Body")
        if head is None or body is None:
            raise MalformedReport("Report is missing its Head or Body section")

        meta = self._parse_meta(_child(root, "Control"), head)
        result = ParsedReport(meta=meta, observations=[])

        seen: Dict[Tuple[str, str], CityObservation] = {}
        sentinel_seen = False

        for block in body.iter():
            if _local(block.tag) not in BLOCK_TAGS or block.get("type") is None:
                continue

            try:
                if not self._is_city_block(block):
                    continue
            except UnrecognizedCity as e:
                logger.warning(f"Skipping block: {e}")
                result.skipped_blocks += 1
                continue

            for item in _children(block, "Item"):
                cities = self._item_cities(item)
                if not cities:
                    logger.warning(f"Skipping item without city name in block {block.get('type')!r}")
                    result.skipped_blocks += 1
                    continue

                for kind in _children(item, "Kind"):
                    raw_status = _text(kind, "Status")
                    if raw_status == NO_WARNINGS_TEXT:
                        sentinel_seen = True
                        continue

                    name = _text(kind, "Name")
                    if not name:
                        continue

                    for city in cities:
                        key = (city, name)
                        if key in seen:
                            continue
                        status = self._resolve_status(raw_status, city, name, result)
                        seen[key] = CityObservation(
                            city=city,
                            kind=name,
                            status=status,
                            raw_status=raw_status,
                            kind_code=_text(kind, "Code"),
                        )

        if seen:
            result.observations = list(seen.values())
        elif sentinel_seen:
            result.observations = [NoWarningsInRegion()]
        else:
            raise MalformedReport("Report yielded no city observations")

        return result

    def _parse_meta(self, control: Optional[ET.Element], head: ET.Element) -> ReportMeta:
        return ReportMeta(
            control_title=_text(control, "Title"),
            control_datetime=_text(control, "DateTime"),
            publishing_office=_text(control, "PublishingOffice"),
            head_title=_text(head, "Title"),
            report_datetime=_text(head, "ReportDateTime"),
            info_type=_text(head, "InfoType"),
        )

    def _is_city_block(self, block: ET.Element) -> bool:
        block_type = block.get("type", "").strip()
        if block_type == self.city_block_type:
            return True
        if CITY_LEVEL_MARKER in block_type:
            raise UnrecognizedCity(f"unknown city bracket convention {block_type!r}", block_type=block_type)
        # Other area levels (prefecture, primary subdivision) are not city blocks
        return False

    def _item_cities(self, item: ET.Element) -> List[str]:
        cities = []
        for area in _children(item, "Area"):
            name = _text(area, "Name")
            if name:
                cities.append(name)
        for areas in _children(item, "Areas"):
            for area in _children(areas, "Area"):
                name = _text(area, "Name")
                if name:
                    cities.append(name)
        return cities

    def _resolve_status(self, raw_status: str, city: str, kind: str, result: ParsedReport) -> WarningStatus:
        status = map_status(raw_status)
        if status is None:
            logger.warning(
                f"Unrecognized status text {raw_status!r} for {city} / {kind}; treating as continued"
            )
            result.unmapped_statuses.append(raw_status)
            return WarningStatus.CONTINUED
        return status
