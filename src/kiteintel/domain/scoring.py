"""Priority scoring for analysed contacts.

priority_bucket is the only place the thresholds live; the analysis worker
and any other caller that needs a bucket goes through it.
"""

from typing import Literal

Priority = Literal["alta", "media", "baixa"]

HIGH_THRESHOLD = 70
MEDIUM_THRESHOLD = 40


def clamp_score(value: object) -> int:
    """Coerce a model-provided score into an int within 0-100.

    Non-numeric values become 0.
    """
    if isinstance(value, bool):
        return 0
    if isinstance(value, str):
        try:
            value = float(value.strip().rstrip("%"))
        except ValueError:
            return 0
    if not isinstance(value, (int, float)):
        return 0
    return max(0, min(100, int(round(value))))


def priority_bucket(conversion_probability: int) -> Priority:
    """Map a conversion probability (0-100) to a priority bucket.

    >= 70 alta, >= 40 media, otherwise baixa.
    """
    if conversion_probability >= HIGH_THRESHOLD:
        return "alta"
    if conversion_probability >= MEDIUM_THRESHOLD:
        return "media"
    return "baixa"


def next_status(current: str | None, priority: Priority) -> str | None:
    """Pipeline status after an analysis, or None to keep the current one.

    A plain lead becomes lead_quente when the bucket is alta. Contacts
    already further along (customers, lost leads) are never changed.
    """
    if priority == "alta" and current in (None, "lead"):
        return "lead_quente"
    return None
