"""
Decode orchestration: input -> listing -> augmentation -> report -> published id.

Stages run strictly in order and report progress through an optional
callback:

    normalize 0.1 -> property 0.3 -> augment 0.5 -> report 0.7
    -> share_image 0.85 -> publish 0.95 -> complete 1.0

Everything up to and including ``report`` is fatal: the failure is emitted
as an ``error`` progress event and re-raised. ``share_image`` is
best-effort and only emits a warning.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from augment import augment_property
from decode_trace import get_trace
from decoder import get_or_create_decoder_report
from errors import NotFoundError
from hashing import prefs_hash
from normalize import normalize_input
from og_image import get_or_create_share_image
from resolver import resolve_listing
from slug import slug_from_report
from storage import report_url, save_report

logger = logging.getLogger(__name__)

STAGE_PROGRESS = {
    "normalize": 0.1,
    "property": 0.3,
    "augment": 0.5,
    "report": 0.7,
    "share_image": 0.85,
    "publish": 0.95,
    "complete": 1.0,
}

STAGE_MESSAGES = {
    "normalize": "Normalizing input...",
    "property": "Fetching property data...",
    "augment": "Checking the neighborhood...",
    "report": "Generating decoder report...",
    "share_image": "Generating share image...",
    "publish": "Finalizing...",
    "complete": "Complete!",
}


@dataclass
class DecodeRequest:
    url: Optional[str] = None
    address: Optional[str] = None
    prefs: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DecodeRequest":
        prefs = data.get("prefs") if isinstance(data.get("prefs"), dict) else {}
        return cls(url=data.get("url") or None, address=data.get("address") or None, prefs=dict(prefs))

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "address": self.address, "prefs": self.prefs}


@dataclass
class DecodeProgress:
    stage: str
    progress: float
    message: str = ""
    warning: Optional[str] = None


@dataclass
class DecodeResult:
    id: str
    url: str
    slug: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "url": self.url, "slug": self.slug}


ProgressCallback = Callable[[DecodeProgress], None]


def _emit(on_progress: Optional[ProgressCallback], stage: str,
          progress: Optional[float] = None, message: Optional[str] = None,
          warning: Optional[str] = None) -> None:
    if not on_progress:
        return
    on_progress(DecodeProgress(
        stage=stage,
        progress=STAGE_PROGRESS.get(stage, 0.0) if progress is None else progress,
        message=message if message is not None else STAGE_MESSAGES.get(stage, ""),
        warning=warning,
    ))


def _run_stage(stage: str, fn: Callable, *args, best_effort: bool = False, **kwargs):
    """Run one stage with trace timing; exceptions propagate to the caller."""
    trace = get_trace()
    if trace:
        trace.start_stage(stage)
    t0 = time.time()
    try:
        result = fn(*args, **kwargs)
    except Exception as e:
        if trace:
            trace.record_stage(stage, t0, time.time(), error=e, best_effort=best_effort)
        raise
    if trace:
        trace.record_stage(stage, t0, time.time(), best_effort=best_effort)
    return result


def _run_best_effort(on_progress: Optional[ProgressCallback], stage: str, unavailable: str,
                     fn: Callable, *args, **kwargs) -> Any:
    """Run an optional stage. A raised error or an empty result becomes a
    warning event and None; the decode carries on either way."""
    try:
        result = _run_stage(stage, fn, *args, best_effort=True, **kwargs)
    except Exception as e:
        logger.warning("%s failed (non-blocking): %s", stage, e, exc_info=True)
        _emit(on_progress, stage, warning=f"{unavailable}: {e}")
        return None
    if result is None:
        logger.warning("%s produced no output (non-blocking)", stage)
        _emit(on_progress, stage, warning=unavailable)
    return result


def _resolve(normalized) -> Any:
    listing = resolve_listing(normalized.address, normalized.source_meta.url)
    if listing is None:
        hint = (
            "Provide the full street address, or enable scraping for listing URLs."
            if normalized.source_meta.url else "Please check the address."
        )
        raise NotFoundError(
            "listing",
            normalized.address or normalized.source_meta.url,
            user_message=f"We couldn't find that property. {hint}",
        )
    return listing


def execute_decode_flow(request: DecodeRequest,
                        on_progress: Optional[ProgressCallback] = None) -> DecodeResult:
    stage = "normalize"
    try:
        _emit(on_progress, stage)
        normalized = _run_stage(stage, normalize_input, url=request.url, address=request.address)

        stage = "property"
        _emit(on_progress, stage)
        listing = _run_stage(stage, _resolve, normalized)

        stage = "augment"
        _emit(on_progress, stage)
        augmentation = _run_stage(stage, augment_property, listing, request.prefs).to_dict()

        stage = "report"
        _emit(on_progress, stage)
        report = _run_stage(
            stage, get_or_create_decoder_report, listing, augmentation, request.prefs
        )
    except Exception as e:
        logger.warning("Decode failed at %s stage: %s", stage, e)
        _emit(on_progress, "error", progress=STAGE_PROGRESS.get(stage, 0.0), message=str(e))
        raise

    _emit(on_progress, "share_image")
    _run_best_effort(on_progress, "share_image", "Share image unavailable",
                     get_or_create_share_image, listing, report, prefs_hash(request.prefs))

    stage = "publish"
    _emit(on_progress, stage)
    try:
        slug = slug_from_report(listing, report)
        report_id = _run_stage(
            stage, save_report, slug, listing, report, augmentation, prefs_hash(request.prefs)
        )
    except Exception as e:
        logger.warning("Decode failed at %s stage: %s", stage, e)
        _emit(on_progress, "error", progress=STAGE_PROGRESS[stage], message=str(e))
        raise

    _emit(on_progress, "complete")
    return DecodeResult(id=report_id, url=report_url(report_id), slug=slug)
