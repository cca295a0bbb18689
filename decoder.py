"""
Decoder report generation.

Builds a prompt from the listing, its augmentation and the user's
preferences, asks an OpenAI chat model for a JSON report, and rebuilds the
report field by field so every score is clamped and every list truncated
no matter what the model returned. Reports are cached per
(address, preferences, config version).
"""

import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI

import cache
from decode_trace import get_trace
from decoder_config import DECODER_CONFIG, outbound_timeout
from errors import APIError, ConfigurationError, ParseError
from hashing import addr_hash, prefs_hash, report_hash
from listing import Listing
from provider_http import parse_retry_after

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"
TEMPERATURE = 0.7
MAX_RETRIES = 2

CATEGORIES = ("value", "livability", "noise_light", "hazards", "transparency")

OUTPUT_SHAPE = """{
  "summary": "string",
  "red_flags": [{"title": "string", "description": "string", "source_field": "string"}],
  "positives": [{"title": "string", "description": "string"}],
  "scorecard": {
    "value": {"score": number, "rationale": "string"},
    "livability": {"score": number, "rationale": "string"},
    "noise_light": {"score": number, "rationale": "string"},
    "hazards": {"score": number, "rationale": "string"},
    "transparency": {"score": number, "rationale": "string"},
    "total": number
  },
  "follow_up_questions": ["string"],
  "caption": "string"
}"""


def decoder_model() -> str:
    return os.environ.get("DECODER_MODEL", DEFAULT_MODEL)


# =============================================================================
# Prompt
# =============================================================================

def build_prompt(listing: Listing, augmentation: Optional[Dict[str, Any]],
                 prefs: Optional[Dict[str, Any]] = None) -> str:
    limits = DECODER_CONFIG.report
    payload = {
        "listing": listing.to_dict()["listing"],
        "augmentation": augmentation or {},
        "preferences": prefs or {},
    }
    threshold = limits.registry_red_flag_threshold
    return f"""You are Landlord Decoder, a renter's advocate. Be blunt but fair and never invent facts.

Listing, augmentation and renter preferences:

<json>{json.dumps(payload, indent=2, default=str)}</json>

Rules:
- Work only from the data above. Where price, beds or baths are missing, say so in the relevant rationale and score with what is available.
- Do not produce a red flag whose only point is that price, beds or baths are missing; the UI already shows that.
- augmentation.location_insights.registry holds registry counts (count_1mi, count_2mi) and official registry links.
  Add a registry red flag only when count_1mi > {threshold}. If you add one, put it LAST in red_flags and give it no source_field.
- Noise, flood and wildfire tiers come from augmentation.noise and augmentation.hazards; "unknown" means no data, not low risk.
- A commute in augmentation.commute is a straight-line estimate; describe it as approximate.

Task:
1) summary: 2-3 sentences that cut through the marketing copy. Mention incomplete listing data up front.
2) red_flags: up to {limits.max_red_flags}, strongest first, each naming the listing or augmentation field that supports it in source_field.
3) positives: up to {limits.max_positives} things that genuinely stand out (amenities, schools, transit, features).
4) scorecard: score value, livability, noise_light, hazards and transparency from 0 to 10, each with a short rationale.
   total is the average of the five scores scaled to 0-100.
5) follow_up_questions: {limits.max_follow_ups} questions for the landlord or agent that would resolve the red flags or missing data.
6) caption: a one-line summary of at most {limits.max_caption_chars} characters.

Return ONLY valid JSON in exactly this shape:
{OUTPUT_SHAPE}"""


# =============================================================================
# Response parsing
# =============================================================================

def _first_json_object(text: str) -> Optional[Dict[str, Any]]:
    """First decodable JSON object in text (tolerates prose and code fences)."""
    decoder = json.JSONDecoder()
    idx = text.find("{")
    while idx != -1:
        try:
            obj, _ = decoder.raw_decode(text, idx)
        except ValueError:
            idx = text.find("{", idx + 1)
            continue
        if isinstance(obj, dict):
            return obj
        idx = text.find("{", idx + 1)
    return None


def _clamp(value: Any, low: float, high: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return low
    if number != number:  # NaN
        return low
    return max(low, min(high, number))


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _items(value: Any) -> List[Dict[str, Any]]:
    return [v for v in value if isinstance(v, dict)] if isinstance(value, list) else []


def _score_total(scorecard: Dict[str, Any], categories: Dict[str, Dict[str, Any]]) -> int:
    limits = DECODER_CONFIG.report
    raw = scorecard.get("total")
    if raw is None:
        # Model omitted the total: derive it from the category average.
        raw = sum(c["score"] for c in categories.values()) / len(categories) * 10
    return int(round(_clamp(raw, 0, limits.max_total_score)))


def parse_report(text: str) -> Dict[str, Any]:
    """Rebuild a DecoderReport from model output; ParseError if there is no JSON object."""
    limits = DECODER_CONFIG.report
    parsed = _first_json_object(text or "")
    if parsed is None:
        raise ParseError(
            "Decoder response contained no JSON object",
            context={
                "response_length": len(text or ""),
                "response_preview": (text or "")[:limits.parse_preview_chars],
            },
        )

    red_flags = []
    for flag in _items(parsed.get("red_flags"))[:limits.max_red_flags]:
        item = {"title": _text(flag.get("title")), "description": _text(flag.get("description"))}
        if _text(flag.get("source_field")):
            item["source_field"] = _text(flag.get("source_field"))
        red_flags.append(item)

    positives = [
        {"title": _text(p.get("title")), "description": _text(p.get("description"))}
        for p in _items(parsed.get("positives"))[:limits.max_positives]
    ]

    raw_scorecard = parsed.get("scorecard") if isinstance(parsed.get("scorecard"), dict) else {}
    categories = {}
    for name in CATEGORIES:
        entry = raw_scorecard.get(name) if isinstance(raw_scorecard.get(name), dict) else {}
        categories[name] = {
            "score": round(_clamp(entry.get("score"), 0, limits.max_category_score), 1),
            "rationale": _text(entry.get("rationale")),
        }
    scorecard = dict(categories)
    scorecard["total"] = _score_total(raw_scorecard, categories)

    questions = parsed.get("follow_up_questions")
    questions = [q.strip() for q in questions if isinstance(q, str) and q.strip()] if isinstance(questions, list) else []

    return {
        "summary": _text(parsed.get("summary")),
        "red_flags": red_flags,
        "positives": positives,
        "scorecard": scorecard,
        "follow_up_questions": questions[:limits.max_follow_ups],
        "caption": _text(parsed.get("caption"))[:limits.max_caption_chars],
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "version": DECODER_CONFIG.version,
    }


# =============================================================================
# Model call
# =============================================================================

def _get_client() -> OpenAI:
    api_key = os.environ.get("OPENAI_API_KEY")
    if not api_key:
        raise ConfigurationError("OPENAI_API_KEY is not set")
    # Retries are handled below so every attempt shows up in the trace.
    return OpenAI(api_key=api_key, timeout=outbound_timeout() * 3, max_retries=0)


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError)):
        return True
    return isinstance(exc, openai.APIStatusError) and exc.status_code >= 500


def _retry_after_seconds(exc: Exception) -> Optional[float]:
    """The upstream Retry-After on a status error, capped; None when absent."""
    response = getattr(exc, "response", None)
    if response is None:
        return None
    seconds = parse_retry_after(response.headers.get("retry-after"))
    if seconds is None:
        return None
    return min(seconds, DECODER_CONFIG.retry.max_retry_after)


def _complete(prompt: str) -> str:
    client = _get_client()
    model = decoder_model()
    trace = get_trace()
    last_error: Optional[Exception] = None

    for attempt in range(MAX_RETRIES + 1):
        t0 = time.time()
        try:
            response = client.chat.completions.create(
                model=model,
                messages=[{"role": "user", "content": prompt}],
                temperature=TEMPERATURE,
                response_format={"type": "json_object"},
            )
        except (openai.APIStatusError, openai.APITimeoutError, openai.APIConnectionError) as e:
            last_error = e
            status = getattr(e, "status_code", None)
            if trace:
                trace.record_api_call(
                    "openai", "chat.completions", int((time.time() - t0) * 1000),
                    status or 0, provider_status=type(e).__name__, attempt=attempt + 1,
                )
            if attempt < MAX_RETRIES and _is_retryable(e):
                retry_after = _retry_after_seconds(e)
                delay = retry_after if retry_after is not None else 2 ** attempt
                logger.warning(
                    "OpenAI call failed (%s), retrying in %.1fs (attempt %d/%d)",
                    type(e).__name__, delay, attempt + 1, MAX_RETRIES + 1,
                )
                time.sleep(delay)
                continue
            raise APIError(
                "openai", str(e), upstream_status=status, context={"model": model, "attempt": attempt}
            ) from e
        except openai.APIError as e:
            # Response validation and other client-side SDK failures; not retried.
            if trace:
                trace.record_api_call(
                    "openai", "chat.completions", int((time.time() - t0) * 1000),
                    0, provider_status=type(e).__name__, attempt=attempt + 1,
                )
            raise APIError("openai", str(e), context={"model": model, "attempt": attempt}) from e

        if trace:
            trace.record_api_call(
                "openai", "chat.completions", int((time.time() - t0) * 1000), 200, attempt=attempt + 1
            )
        return response.choices[0].message.content or ""

    raise APIError("openai", str(last_error) or "report generation failed after retries")


def generate_decoder_report(listing: Listing, augmentation: Optional[Dict[str, Any]],
                            prefs: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Uncached report generation: one model call (plus retries) and parsing."""
    text = _complete(build_prompt(listing, augmentation, prefs))
    return parse_report(text)


def report_cache_key(listing: Listing, prefs: Optional[Dict[str, Any]] = None) -> str:
    digest = report_hash(addr_hash(listing.fields.address), prefs_hash(prefs), DECODER_CONFIG.version)
    return cache.cache_key(cache.PREFIXES.report, digest)


def get_or_create_decoder_report(listing: Listing, augmentation: Optional[Dict[str, Any]],
                                 prefs: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return cache.get_or_set(
        report_cache_key(listing, prefs),
        cache.TTL.report,
        lambda: generate_decoder_report(listing, augmentation, prefs),
    )
