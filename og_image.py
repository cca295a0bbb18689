"""Share image generator for decoder reports.

Generates a 1200x630 card showing:
  - Landlord Decoder brand text
  - Property address
  - Total score with a band color
  - Top two red flags and the top positive
  - The report caption

Rendering is best-effort: failures return None and the decode carries on
without an image.
"""

import base64
import io
import logging
from typing import Any, Dict, Optional

from PIL import Image, ImageDraw, ImageFont

import cache
from hashing import addr_hash, report_hash
from listing import Listing
from decoder_config import DECODER_CONFIG

logger = logging.getLogger(__name__)

BRAND_PRIMARY = "#1e293b"
SURFACE_WHITE = "#ffffff"
TEXT_MUTED = "#475569"
TEXT_FAINT = "#888888"
FLAG_RED = "#dc2626"
POSITIVE_GREEN = "#16a34a"

WIDTH = 1200
HEIGHT = 630

# Font paths (DejaVu is standard on Linux)
_FONT_BOLD = "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf"
_FONT_REGULAR = "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf"


def score_color(score: int) -> str:
    if score >= 75:
        return "#16a34a"
    if score >= 50:
        return "#eab308"
    if score >= 30:
        return "#f97316"
    return "#ef4444"


def _load_font(path: str, size: int) -> ImageFont.FreeTypeFont:
    """Load a TrueType font, falling back to Pillow default on error."""
    try:
        return ImageFont.truetype(path, size)
    except (OSError, IOError):
        logger.warning("Font %s not found, using default bitmap font", path)
        return ImageFont.load_default()


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit - 3] + "..."


def display_address(listing: Listing) -> str:
    f = listing.fields
    parts = [f.address]
    for extra in (f.city, f.state):
        if extra and extra.lower() not in f.address.lower():
            parts.append(extra)
    return ", ".join(p for p in parts if p)


def generate_share_image(listing: Listing, report: Dict[str, Any]) -> Optional[bytes]:
    """Return PNG bytes for the share card, or None on failure."""
    try:
        score = int((report.get("scorecard") or {}).get("total") or 0)
        color = score_color(score)

        img = Image.new("RGB", (WIDTH, HEIGHT), SURFACE_WHITE)
        draw = ImageDraw.Draw(img)

        # Left accent strip
        draw.rectangle([0, 0, 10, HEIGHT], fill=color)

        font_brand = _load_font(_FONT_BOLD, 40)
        font_address = _load_font(_FONT_REGULAR, 28)
        font_score = _load_font(_FONT_BOLD, 120)
        font_label = _load_font(_FONT_REGULAR, 44)
        font_item = _load_font(_FONT_REGULAR, 26)
        font_caption = _load_font(_FONT_REGULAR, 24)

        draw.text((60, 40), "Landlord Decoder", fill=BRAND_PRIMARY, font=font_brand)
        draw.text((60, 100), _truncate(display_address(listing), 60), fill=TEXT_MUTED, font=font_address)

        # Score on the right
        score_text = str(score)
        score_bbox = draw.textbbox((0, 0), score_text, font=font_score)
        score_w = score_bbox[2] - score_bbox[0]
        score_x = WIDTH - 220 - score_w
        draw.text((score_x, 170), score_text, fill=color, font=font_score)
        draw.text((score_x + score_w + 8, 245), "/100", fill=TEXT_FAINT, font=font_label)

        # Red flags and top positive on the left
        y = 190
        for flag in (report.get("red_flags") or [])[:2]:
            draw.text((60, y), _truncate("! " + (flag.get("title") or ""), 42), fill=FLAG_RED, font=font_item)
            y += 50
        positives = report.get("positives") or []
        if positives:
            draw.text((60, y), _truncate("+ " + (positives[0].get("title") or ""), 42),
                      fill=POSITIVE_GREEN, font=font_item)

        caption = report.get("caption") or ""
        if caption:
            draw.text((60, 470), _truncate(caption, 80), fill=TEXT_MUTED, font=font_caption)

        # Bottom border accent
        draw.rectangle([0, HEIGHT - 6, WIDTH, HEIGHT], fill=color)

        buf = io.BytesIO()
        img.save(buf, format="PNG", optimize=True)
        return buf.getvalue()

    except Exception:
        logger.exception("Failed to generate share image")
        return None


def share_image_key(listing: Listing, prefs_key: str = "default") -> str:
    digest = report_hash(addr_hash(listing.fields.address), prefs_key, DECODER_CONFIG.version)
    return cache.cache_key(cache.PREFIXES.share_image, digest)


def get_or_create_share_image(listing: Listing, report: Dict[str, Any],
                              prefs_key: str = "default") -> Optional[bytes]:
    """Cached PNG (stored base64 in the kv backend), or None if rendering failed.

    prefs_key is hashing.prefs_hash() of the decode preferences.
    """
    def _render():
        png = generate_share_image(listing, report)
        return base64.b64encode(png).decode("ascii") if png else None

    encoded = cache.get_or_set(share_image_key(listing, prefs_key), cache.TTL.share_image, _render)
    return base64.b64decode(encoded) if encoded else None
