import sys

from backend.models import Entry, utc_now

# corrections since the last profile that trigger a rebuild
REGENERATE_THRESHOLD = 20
PROFILE_CORRECTIONS = 100

_SYSTEM = (
    "You are a helpful assistant that analyzes reading preferences. Be concise "
    "and specific."
)


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."


def build_preference_prompt(corrections: list[Entry]) -> str:
    lines = [
        "Based on the following rating corrections, generate a brief preference "
        "profile describing what topics and content the user values highly vs. "
        "finds less interesting.\n",
        "Rating corrections (AI rating -> User rating):",
    ]
    for c in corrections:
        lines.append(
            f'- "{c.title}" (summary: {_truncate(c.summary, 100)}): '
            f"AI={c.ai_stars}, User={c.user_stars}"
        )
    lines.append(
        "\nGenerate a concise preference profile (3-5 paragraphs) that can guide "
        "future article scoring."
    )
    return "\n".join(lines)


def generate_profile(store, complete) -> str:
    corrections = store.list_corrections(limit=PROFILE_CORRECTIONS)
    if not corrections:
        raise ValueError("no corrections found")
    response = complete(
        [
            {"role": "system", "content": _SYSTEM},
            {"role": "user", "content": build_preference_prompt(corrections)},
        ]
    )
    profile_text = (response or "").strip()
    if not profile_text:
        raise ValueError("empty profile from model")
    store.save_preference_profile(profile_text, utc_now())
    return profile_text


def check_and_regenerate(store, complete) -> bool:
    """Rebuild the preference profile once enough ratings were corrected.

    Returns True when a new profile was saved. Never raises.
    """
    try:
        profile = store.get_preference_profile()
        since = profile.generated_at if profile else None
        count = store.count_corrections(since=since)
    except Exception as e:
        print(f"PREFERENCE_CHECK_FAIL err={str(e)[:200]}", file=sys.stderr)
        return False

    if count < REGENERATE_THRESHOLD:
        return False

    print(f"PREFERENCE_REGENERATE corrections={count}")
    try:
        generate_profile(store, complete)
    except Exception as e:
        print(f"PREFERENCE_REGENERATE_FAIL err={str(e)[:200]}", file=sys.stderr)
        return False
    return True
