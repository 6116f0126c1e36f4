"""Redaction rectangle helpers and face-suggestion bookkeeping.

Pure functions; pixel work (pixelation) and detection happen in external
collaborators. Coordinates are image pixels, origin top-left.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

from evault.storage.models import RedactionRect


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def normalize_rect(rect: RedactionRect, max_width: float, max_height: float) -> RedactionRect:
    """Flip negative extents (drag up/left), then clamp to the image bounds.

    May return a zero-area rect; callers that need area filter it out.
    """

    x = rect.x + rect.width if rect.width < 0 else rect.x
    y = rect.y + rect.height if rect.height < 0 else rect.y
    width = abs(rect.width)
    height = abs(rect.height)

    cx = _clamp(x, 0, max_width)
    cy = _clamp(y, 0, max_height)
    return RedactionRect(
        x=cx,
        y=cy,
        width=max(0, min(width, max_width - cx)),
        height=max(0, min(height, max_height - cy)),
    )


def _clip_rect(
    x: float, y: float, width: float, height: float, max_width: float, max_height: float
) -> Optional[RedactionRect]:
    cx = _clamp(x, 0, max_width)
    cy = _clamp(y, 0, max_height)
    w = max(0, min(max_width - cx, width))
    h = max(0, min(max_height - cy, height))
    if w <= 0 or h <= 0:
        return None
    return RedactionRect(x=cx, y=cy, width=w, height=h)


def clamp_redaction_rects(
    rects: Sequence[RedactionRect], width: float, height: float
) -> List[RedactionRect]:
    """Clip each rect to the image; drop the ones left with no area."""

    out: List[RedactionRect] = []
    for r in rects:
        clipped = _clip_rect(r.x, r.y, r.width, r.height, width, height)
        if clipped is not None:
            out.append(clipped)
    return out


def normalize_redaction_rects(
    rects: Sequence[RedactionRect],
    width: Optional[float] = None,
    height: Optional[float] = None,
) -> List[RedactionRect]:
    """Normalize rects for storage: flip negative extents, clamp, drop empties.

    Without image dimensions only the origin is clamped to zero.
    """

    max_w = math.inf if width is None else width
    max_h = math.inf if height is None else height
    out: List[RedactionRect] = []
    for r in rects:
        n = normalize_rect(r, max_w, max_h)
        if n.width > 0 and n.height > 0:
            out.append(n)
    return out


@dataclass(frozen=True, slots=True)
class FaceDetection:
    """One detector hit: a box in pixels plus per-category confidences."""

    x: float
    y: float
    width: float
    height: float
    category_scores: Tuple[float, ...] = ()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Optional["FaceDetection"]:
        """Accept `{boundingBox: {originX, originY, width, height}, categories: [{score}]}`."""

        box = data.get("boundingBox")
        if not isinstance(box, Mapping):
            return None
        scores = tuple(
            float(c.get("score") or 0)
            for c in data.get("categories") or []
            if isinstance(c, Mapping)
        )
        return cls(
            x=float(box.get("originX", 0)),
            y=float(box.get("originY", 0)),
            width=float(box.get("width", 0)),
            height=float(box.get("height", 0)),
            category_scores=scores,
        )


@dataclass(frozen=True)
class DetectionRects:
    rects: List[RedactionRect] = field(default_factory=list)
    scores: List[float] = field(default_factory=list)


def convert_detections_to_rects(
    detections: Sequence[Union[FaceDetection, Mapping[str, Any]]],
    width: float,
    height: float,
) -> DetectionRects:
    """Clip detector boxes to the image; score each by its best category."""

    out = DetectionRects()
    for raw in detections:
        det = raw if isinstance(raw, FaceDetection) else FaceDetection.from_mapping(raw)
        if det is None:
            continue
        rect = _clip_rect(det.x, det.y, det.width, det.height, width, height)
        if rect is None:
            continue
        out.rects.append(rect)
        out.scores.append(max(det.category_scores) if det.category_scores else 0.0)
    return out


@dataclass(frozen=True, slots=True)
class FaceSuggestion:
    id: str
    rect: RedactionRect
    score: float
    included: bool = True


@dataclass(frozen=True)
class AppliedSuggestions:
    rects: List[RedactionRect]
    remaining: List[FaceSuggestion]
    added: int


def apply_face_suggestions(
    existing: Sequence[RedactionRect], suggestions: Sequence[FaceSuggestion]
) -> AppliedSuggestions:
    """Move included suggestions into the rect list; keep the rest pending."""

    accepted = [s for s in suggestions if s.included]
    if not accepted:
        return AppliedSuggestions(rects=list(existing), remaining=list(suggestions), added=0)
    return AppliedSuggestions(
        rects=list(existing) + [s.rect for s in accepted],
        remaining=[s for s in suggestions if not s.included],
        added=len(accepted),
    )


def hydrate_face_suggestions(
    boxes: Sequence[RedactionRect], detected_at: Optional[int] = None
) -> List[FaceSuggestion]:
    """Rebuild suggestions from boxes stored on an item (scores are not kept)."""

    return [
        FaceSuggestion(id=f"stored-{detected_at or 0}-{i}", rect=rect, score=0.0, included=True)
        for i, rect in enumerate(boxes)
    ]
