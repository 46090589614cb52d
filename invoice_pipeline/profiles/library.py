"""Built-in supplier profiles and the structural line-item matcher.

A profile describes one supplier's printed table layout: a primary regex with
named groups (code, description, quantity, unit, unit_price, discount,
net_unit_price, total), fallbacks for layout variants, and sanity limits used
to validate what was captured.

Matching order for a profile:
1. primary pattern over the whole text (multiline)
2. for each marker line the primary pattern missed, the fallbacks in order
3. whitespace tokenisation around the unit token as a last resort
"""

import logging
import re
from dataclasses import dataclass, field

from invoice_pipeline.extraction.schema import LineItem, build_line_item
from invoice_pipeline.normalization.amounts import parse_amount
from invoice_pipeline.normalization.tax import within_tolerance

logger = logging.getLogger(__name__)

_AMOUNT = r"\d+(?:\.\d{2})?"


@dataclass(frozen=True)
class LinePattern:
    """A named line-item regex. Missing groups fall back to defaults."""

    name: str
    regex: str

    def compile(self) -> re.Pattern[str]:
        return re.compile(self.regex, re.MULTILINE)


@dataclass(frozen=True)
class SupplierProfile:
    """Static description of one supplier's invoice layout."""

    code: str
    name: str
    identifier: re.Pattern[str]
    primary: LinePattern
    fallbacks: tuple[LinePattern, ...] = ()
    marker: re.Pattern[str] | None = None
    unit_tokens: tuple[str, ...] = ("Each", "x")
    tax_rate: float = 15.0
    currency: str = "ZAR"
    max_quantity: float = 10000
    max_unit_price: float = 100000
    table_headers: tuple[str, ...] = field(default_factory=tuple)

    def matches(self, text: str) -> bool:
        return bool(self.identifier.search(text))


@dataclass
class RawLine:
    """Values captured from one printed line before normalisation."""

    text: str
    source: str
    description: str
    code: str | None = None
    quantity: float | None = None
    unit: int = 1
    unit_price: float | None = None
    discount: float = 0.0
    net_unit_price: float | None = None
    total: float | None = None


MEDIS = SupplierProfile(
    code="medis",
    name="MEDIS (PTY) LTD",
    identifier=re.compile(r"MEDIS\s*\(PTY\)\s*LTD", re.IGNORECASE),
    # F-00042-47B  Met & Bunion Protector Sleeve Size L  4.00  x 1  300.33  25.0  R135.1  R900.99
    primary=LinePattern(
        "primary",
        rf"^(?P<code>[A-Z0-9-]+)[ \t]+(?P<description>.+?)[ \t]+(?P<quantity>{_AMOUNT})[ \t]+"
        rf"(?:x[ \t]+(?P<unit>\d+)|Each)[ \t]+(?P<unit_price>{_AMOUNT})[ \t]+"
        r"(?P<discount>\d+(?:\.\d{0,2})?)[ \t]+(?:R(?P<net_unit_price>\d+(?:\.\d{1,2})?))?[ \t]*"
        rf"R(?P<total>{_AMOUNT})[ \t]*$",
    ),
    fallbacks=(
        # OCR noise digits between the price columns
        LinePattern(
            "x-format-noisy",
            rf"^(?P<code>[A-Z0-9-]+)[ \t]+(?P<description>.+?)[ \t]+(?P<quantity>{_AMOUNT})[ \t]+"
            rf"x[ \t]+(?P<unit>\d+)[ \t]+(?P<unit_price>{_AMOUNT})[ \t]+"
            r"(?P<discount>\d+(?:\.\d{0,2})?)[ \t]+\d+[ \t]+R(?P<net_unit_price>\d+(?:\.\d{1,2})?)"
            rf"[ \t]+\d+[ \t]+R(?P<total>{_AMOUNT})[ \t]*$",
        ),
        LinePattern(
            "each-format",
            rf"^(?P<code>[A-Z0-9-]+)[ \t]+(?P<description>.+?)[ \t]+(?P<quantity>{_AMOUNT})[ \t]+"
            rf"Each[ \t]+(?P<unit_price>{_AMOUNT})[ \t]+R(?P<net_unit_price>\d+(?:\.\d{{1,2}})?)"
            rf"[ \t]+\d+[ \t]+R(?P<total>{_AMOUNT})[ \t]*$",
        ),
        LinePattern(
            "each-format-loose",
            rf"^(?P<code>[A-Z0-9-]+)[ \t]+(?P<description>.+?)[ \t]+(?P<quantity>{_AMOUNT})[ \t]+"
            rf"Each[ \t]+(?P<unit_price>{_AMOUNT})[ \t]+R?(?P<net_unit_price>\d+(?:\.\d{{1,2}})?)"
            rf"[ \t]*(?:\d+[ \t]+)?R(?P<total>{_AMOUNT})[ \t]*$",
        ),
        LinePattern(
            "generic",
            rf"^(?P<code>[A-Z0-9-]+)[ \t]+(?P<description>.+?)[ \t]+(?P<quantity>{_AMOUNT})[ \t]+"
            rf"(?:x[ \t]*\d+|Each)[ \t]+.+?R(?P<total>{_AMOUNT})[ \t]*$",
        ),
    ),
    marker=re.compile(r"^[A-Z]-[A-Z0-9-]+[ \t].*?[ \t](?:x[ \t]*\d+|Each)[ \t].*$", re.MULTILINE),
    table_headers=("Code", "Description", "Quantity", "Unit", "Price", "Disc%", "Net", "Total"),
)

TRANSPHARM = SupplierProfile(
    code="transpharm",
    name="TRANSPHARM",
    identifier=re.compile(r"transpharm", re.IGNORECASE),
    # Orthotics Kit Professional    2    R450.00    R900.00
    primary=LinePattern(
        "primary",
        rf"^(?P<description>[A-Za-z].+?)[ \t]+(?P<quantity>\d+)[ \t]+R?(?P<unit_price>{_AMOUNT})"
        rf"[ \t]+R?(?P<total>{_AMOUNT})[ \t]*$",
    ),
    table_headers=("Description", "Qty", "Price", "Total"),
)

BUILTIN_PROFILES: tuple[SupplierProfile, ...] = (MEDIS, TRANSPHARM)


class SupplierPatternLibrary:
    """Registry of built-in profiles plus the matcher that applies them."""

    def __init__(
        self,
        profiles: tuple[SupplierProfile, ...] = BUILTIN_PROFILES,
        tolerance_percent: float = 5.0,
        tolerance_floor: float = 1.0,
    ) -> None:
        self._profiles = {profile.code: profile for profile in profiles}
        self.tolerance_percent = tolerance_percent
        self.tolerance_floor = tolerance_floor

    def get(self, code: str) -> SupplierProfile | None:
        return self._profiles.get(code)

    def list_profiles(self) -> list[SupplierProfile]:
        return list(self._profiles.values())

    def detect(self, text: str) -> SupplierProfile | None:
        """Return the first profile whose identifier appears in the text."""
        for profile in self._profiles.values():
            if profile.matches(text):
                return profile
        return None

    def extract(self, text: str, profile: SupplierProfile) -> list[LineItem]:
        """Extract and validate line items using one supplier profile.

        Args:
            text: Raw invoice text
            profile: Profile to apply

        Returns:
            Line items in the order they appear in the text (may be empty)
        """
        raw_lines = self.match_lines(text, profile)
        items = [self._to_line_item(raw, profile) for raw in raw_lines]
        logger.info(f"Profile '{profile.code}' extracted {len(items)} line items")
        return items

    def match_lines(self, text: str, profile: SupplierProfile) -> list[RawLine]:
        """Run primary, fallback and tokenisation passes and return raw captures."""
        captured: dict[int, RawLine] = {}

        for match in profile.primary.compile().finditer(text):
            captured[_line_start(text, match.start())] = _raw_from_match(
                match, f"pattern:{profile.code}:{profile.primary.name}"
            )

        if profile.marker is not None:
            for marker in profile.marker.finditer(text):
                start = _line_start(text, marker.start())
                if start in captured:
                    continue
                line = marker.group(0)
                raw = self._match_fallbacks(line, profile)
                if raw is None:
                    raw = tokenize_line(line, profile.unit_tokens, f"pattern:{profile.code}:tokens")
                if raw is None:
                    logger.warning(f"No pattern matched marker line: {line.strip()!r}")
                    continue
                captured[start] = raw

        return [captured[start] for start in sorted(captured)]

    def _match_fallbacks(self, line: str, profile: SupplierProfile) -> RawLine | None:
        for pattern in profile.fallbacks:
            match = pattern.compile().match(line)
            if match:
                logger.debug(f"Fallback '{pattern.name}' matched {line.strip()!r}")
                return _raw_from_match(match, f"pattern:{profile.code}:{pattern.name}")
        return None

    def validate(self, raw: RawLine, profile: SupplierProfile) -> tuple[bool, list[str]]:
        """Range-check captured values.

        Out-of-range quantity, price or discount marks the item invalid.
        """
        errors: list[str] = []
        is_valid = True
        quantity = raw.quantity or 0
        if not (0 < quantity <= profile.max_quantity) or raw.unit <= 0:
            errors.append("Invalid quantity or unit values")
            is_valid = False
        price = raw.unit_price or 0
        if not (0 < price < profile.max_unit_price):
            errors.append("Unit price seems unreasonable")
            is_valid = False
        if not (0 <= raw.discount <= 100):
            errors.append("Discount percentage seems invalid")
            is_valid = False
        return is_valid, errors

    def _to_line_item(self, raw: RawLine, profile: SupplierProfile) -> LineItem:
        if raw.unit_price is None and raw.total and raw.quantity:
            raw.unit_price = raw.total / raw.quantity / (1 - min(raw.discount, 99.99) / 100)
        is_valid, errors = self.validate(raw, profile)

        # "Q x N" is Q packs of N; the printed price is per pack
        unit = raw.unit if raw.unit > 0 else 1
        quantity = (raw.quantity or 1) * unit
        unit_price = (raw.unit_price or 0) / unit

        item = build_line_item(
            code=raw.code,
            description=raw.description or raw.code or "Unknown item",
            quantity=quantity,
            unit_price_excl_tax=unit_price,
            discount_percent=raw.discount,
            tax_rate=profile.tax_rate,
            total_price_as_reported=raw.total,
            currency=profile.currency,
            source=raw.source,
            original_text=raw.text.strip(),
            is_valid=is_valid,
            validation_errors=errors,
        )
        if raw.total is not None and not within_tolerance(
            item.net_total, raw.total, self.tolerance_percent, self.tolerance_floor
        ):
            item.validation_errors.append(
                f"Total price doesn't match expected calculation: "
                f"computed {item.net_total:.2f}, invoice shows {raw.total:.2f}"
            )
        return item


def tokenize_line(line: str, unit_tokens: tuple[str, ...], source: str) -> RawLine | None:
    """Positional parse of a table row split on whitespace.

    Everything before the quantity is code + description, the unit token
    ("Each" or "x N") follows the quantity, then unit price, discount,
    net unit price and total in that order. Only the first price and the
    last total are required.
    """
    parts = line.split()
    unit_index = next(
        (i for i, part in enumerate(parts) if part in unit_tokens and 2 <= i < len(parts) - 1),
        None,
    )
    if unit_index is None:
        return None

    unit = 1
    after = unit_index + 1
    if parts[unit_index] != "Each":
        if not parts[after].isdigit():
            return None
        unit = int(parts[after])
        after += 1

    quantity = parse_amount(parts[unit_index - 1])
    numbers = [parse_amount(part) for part in parts[after:]]
    if quantity is None or len(numbers) < 2 or numbers[0] is None or numbers[-1] is None:
        return None

    description = " ".join(parts[1 : unit_index - 1])
    if not description:
        return None

    return RawLine(
        text=line,
        source=source,
        code=parts[0],
        description=description,
        quantity=quantity,
        unit=unit,
        unit_price=numbers[0],
        discount=(numbers[1] or 0.0) if len(numbers) >= 3 else 0.0,
        net_unit_price=numbers[2] if len(numbers) >= 4 else None,
        total=numbers[-1],
    )


def _raw_from_match(match: re.Match[str], source: str) -> RawLine:
    groups = {key: value for key, value in match.groupdict().items() if value is not None}
    unit = groups.get("unit")
    return RawLine(
        text=match.group(0),
        source=source,
        code=groups.get("code"),
        description=groups.get("description", "").strip(),
        quantity=parse_amount(groups.get("quantity")),
        unit=int(unit) if unit else 1,
        unit_price=parse_amount(groups.get("unit_price")),
        discount=parse_amount(groups.get("discount")) or 0.0,
        net_unit_price=parse_amount(groups.get("net_unit_price")),
        total=parse_amount(groups.get("total")),
    )


def _line_start(text: str, position: int) -> int:
    return text.rfind("\n", 0, position) + 1
