"""Parsing SVG documents into the path primitives consumed by the extractor."""

from __future__ import annotations

import io
import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from xml.parsers.expat import ExpatError

from svgpathtools import Path as SVGPath, svg2paths2

from .errors import MalformedInput

logger = logging.getLogger(__name__)

# Millimetres per unit for the absolute CSS units an SVG root may declare.
UNIT_TO_MM: Dict[str, float] = {
    "mm": 1.0,
    "cm": 10.0,
    "in": 25.4,
    "pt": 25.4 / 72.0,
    "pc": 25.4 / 6.0,
    "px": 25.4 / 96.0,
    "": 25.4 / 96.0,
}

_LENGTH = re.compile(r"^\s*([-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)\s*([a-zA-Z%]*)\s*$")


@dataclass
class Drawing:
    """Vector content handed to the extractor.

    ``paths`` are in document units; ``scale`` converts one document unit to
    millimetres.
    """

    paths: List[SVGPath] = field(default_factory=list)
    scale: float = 1.0

    def bounds(self) -> Tuple[float, float, float, float]:
        """Return ``(xmin, xmax, ymin, ymax)`` in document units."""
        boxes = [p.bbox() for p in self.paths if len(p)]
        if not boxes:
            return (0.0, 0.0, 0.0, 0.0)
        return (
            float(min(b[0] for b in boxes)),
            float(max(b[1] for b in boxes)),
            float(min(b[2] for b in boxes)),
            float(max(b[3] for b in boxes)),
        )


@dataclass
class SVGShape:
    """Single drawable element extracted from the SVG."""

    path: SVGPath
    attributes: Dict[str, str] = field(default_factory=dict)

    @property
    def visible(self) -> bool:
        """False for shapes hidden with ``display:none`` or ``visibility:hidden``."""
        props = {k.strip(): v.strip() for k, v in self.attributes.items()}
        for decl in props.get("style", "").split(";"):
            key, sep, value = decl.partition(":")
            if sep:
                props[key.strip()] = value.strip()
        return props.get("display") != "none" and props.get("visibility") not in ("hidden", "collapse")


@dataclass
class SVGDocument:
    """An SVG document as a flat list of shapes plus its root attributes."""

    shapes: List[SVGShape] = field(default_factory=list)
    svg_attributes: Dict[str, str] = field(default_factory=dict)
    source_path: Optional[Path] = None

    @classmethod
    def from_file(cls, path: Path) -> "SVGDocument":
        doc = cls._parse(str(path))
        doc.source_path = Path(path)
        return doc

    @classmethod
    def from_bytes(cls, data: bytes) -> "SVGDocument":
        return cls._parse(io.BytesIO(data))

    @classmethod
    def from_string(cls, text: str) -> "SVGDocument":
        return cls.from_bytes(text.encode("utf-8"))

    @classmethod
    def _parse(cls, source) -> "SVGDocument":
        try:
            paths, attributes, svg_attributes = svg2paths2(source)
        except (ExpatError, ValueError, IndexError, TypeError, AttributeError) as exc:
            raise MalformedInput(f"Cannot parse SVG: {exc}") from exc
        shapes = [SVGShape(path=p, attributes=dict(a)) for p, a in zip(paths, attributes)]
        logger.debug("Parsed SVG with %d shapes", len(shapes))
        return cls(shapes=shapes, svg_attributes=dict(svg_attributes))

    def unit_scale(self) -> float:
        """Millimetres per user unit, derived from ``width``/``height`` and ``viewBox``.

        When the two axes disagree the viewBox is fitted uniformly into the
        viewport (the SVG default ``xMidYMid meet``), so the smaller factor
        wins and a warning is logged.
        """

        width = self.svg_attributes.get("width")
        height = self.svg_attributes.get("height")
        viewbox = self.svg_attributes.get("viewBox")
        width_mm = _length_to_mm(width) if width else None
        height_mm = _length_to_mm(height) if height else None
        if not viewbox:
            return UNIT_TO_MM["px"]
        try:
            vb = [float(v) for v in viewbox.replace(",", " ").split()]
        except ValueError as exc:
            raise MalformedInput(f"Invalid viewBox: {viewbox!r}") from exc
        if len(vb) != 4 or vb[2] <= 0 or vb[3] <= 0:
            raise MalformedInput(f"Invalid viewBox: {viewbox!r}")

        factors = []
        if width_mm is not None:
            factors.append(width_mm / vb[2])
        if height_mm is not None:
            factors.append(height_mm / vb[3])
        if not factors:
            return UNIT_TO_MM["px"]
        scale = min(factors)
        if not math.isclose(max(factors), scale, rel_tol=1e-6):
            logger.warning(
                "SVG size %s x %s does not match the viewBox aspect %r; using %.6g mm per unit",
                width,
                height,
                viewbox,
                scale,
            )
        return scale

    def to_drawing(self, scale: Optional[float] = None) -> Drawing:
        visible = [shape for shape in self.shapes if shape.visible]
        if len(visible) < len(self.shapes):
            logger.debug("Skipping %d hidden shapes", len(self.shapes) - len(visible))
        return Drawing(
            paths=[shape.path for shape in visible],
            scale=self.unit_scale() if scale is None else float(scale),
        )


def _length_to_mm(value: str) -> Optional[float]:
    m = _LENGTH.match(value)
    if not m:
        raise MalformedInput(f"Invalid SVG length: {value!r}")
    number, unit = float(m.group(1)), m.group(2).lower()
    if unit not in UNIT_TO_MM:
        logger.warning("Ignoring SVG length with unsupported unit %r", value)
        return None
    result = number * UNIT_TO_MM[unit]
    if not math.isfinite(result) or result <= 0:
        raise MalformedInput(f"Invalid SVG length: {value!r}")
    return result


def load_drawing(path: Path) -> Drawing:
    return SVGDocument.from_file(path).to_drawing()


__all__ = ["Drawing", "SVGShape", "SVGDocument", "UNIT_TO_MM", "load_drawing"]
