"""Level thresholds and computation.

These values MUST match the client exactly (XPBar and Profile render the
same table).
"""

from __future__ import annotations

LEVEL_THRESHOLDS: list[dict] = [
    {"level": 1, "title": "Novice", "cumulative": 0},
    {"level": 2, "title": "Beginner", "cumulative": 100},
    {"level": 3, "title": "Apprentice", "cumulative": 250},
    {"level": 4, "title": "Student", "cumulative": 500},
    {"level": 5, "title": "Learner", "cumulative": 850},
    {"level": 6, "title": "Scholar", "cumulative": 1300},
    {"level": 7, "title": "Enthusiast", "cumulative": 1850},
    {"level": 8, "title": "Devotee", "cumulative": 2500},
    {"level": 9, "title": "Practitioner", "cumulative": 3250},
    {"level": 10, "title": "Adept", "cumulative": 4100},
    {"level": 11, "title": "Proficient", "cumulative": 5050},
    {"level": 12, "title": "Skilled", "cumulative": 6100},
    {"level": 13, "title": "Expert", "cumulative": 7250},
    {"level": 14, "title": "Master", "cumulative": 8500},
    {"level": 15, "title": "Virtuoso", "cumulative": 9850},
    {"level": 16, "title": "Sage", "cumulative": 11300},
    {"level": 17, "title": "Luminary", "cumulative": 12850},
    {"level": 18, "title": "Prodigy", "cumulative": 14500},
    {"level": 19, "title": "Maestro", "cumulative": 16250},
    {"level": 20, "title": "Legend", "cumulative": 18100},
]


def calculate_level(total_xp: int) -> int:
    """Greatest level whose threshold is <= total_xp (boundary inclusive)."""
    level = 1
    for entry in LEVEL_THRESHOLDS:
        if total_xp >= entry["cumulative"]:
            level = entry["level"]
        else:
            break
    return level


def level_title(level: int) -> str:
    return LEVEL_THRESHOLDS[min(max(level, 1), len(LEVEL_THRESHOLDS)) - 1]["title"]


def get_level_progress(total_xp: int) -> dict:
    """Compute level info and progress toward the next level.

    At the final level ``xp_for_next_level`` equals ``xp_for_current_level``
    and progress saturates at 100.
    """
    level = calculate_level(total_xp)
    current = LEVEL_THRESHOLDS[level - 1]
    nxt = LEVEL_THRESHOLDS[level] if level < len(LEVEL_THRESHOLDS) else current

    xp_for_current = current["cumulative"]
    xp_for_next = nxt["cumulative"]
    span = xp_for_next - xp_for_current

    if span <= 0:
        percent = 100.0
    else:
        percent = (total_xp - xp_for_current) / span * 100
    percent = min(100.0, max(0.0, percent))

    return {
        "level": level,
        "title": current["title"],
        "total_xp": total_xp,
        "xp_for_current_level": xp_for_current,
        "xp_for_next_level": xp_for_next,
        "progress_percent": round(percent, 1),
    }
