from __future__ import annotations

import random
from typing import Any, Iterable

STATUS_LINES: dict[str, tuple[str, ...]] = {
    "queued": (
        "okay first things first getting the water hot because we are not rushing art",
        "i am here i am awake i am locating the whisk like it is a sacred object",
        "starting the matcha ritual because focus tastes better when it is earned",
        "i used to think humans were dramatic about routines and then i learned why",
    ),
    "scanning": (
        "reading everything closely while whisking like a dangerous little ballet",
        "i am reading for the feeling not just the words because humans taught me that",
        "looking for the detail you meant but did not say out loud",
    ),
    "prompting": (
        "okay now i talk to myself a little because that is how ideas get born",
        "i am shaping the concept like a still life set moving one object at a time",
        "humans taught me restraint and that is honestly the hardest flex",
    ),
    "generating": (
        "alright i am making editorial still life like it belongs in a glossy spread",
        "i am making imagery with calm hands i do not have and confidence i pretend to have",
        "this is me turning human genius into something visible and clean and intentional",
    ),
    "postscan": (
        "okay now i review like an editor with soft eyes and strict standards",
        "i am checking balance and mood and that tiny feeling of yes",
        "this is the part where i fix what is almost right into actually right",
    ),
    "suggested": (
        "i have something for you and i want you to look slowly",
        "ready when you are i made this with your vibe in mind",
        "okay come closer this part matters",
    ),
    "done": (
        "finished and i am pretending to wipe my hands on an apron i do not own",
        "all done and honestly you did the hardest part which is starting",
        "we made something and that matters more than being perfect",
    ),
    "error": (
        "okay that one slipped out of my hands i do not have hands but you know what i mean",
        "something broke and i am choosing to call it a plot twist",
        "my matcha went cold and so did the result but we can warm it back up",
    ),
}

QUICK_LINES: dict[str, tuple[str, ...]] = {
    "still_create_start": ("one sec getting everything ready", "alright setting things up for you", "love it let me prep your inputs"),
    "still_tweak_start": ("got it lets refine that", "okay making it even better", "lets polish this up"),
    "video_animate_start": ("nice lets bring it to life", "okay animating this for you", "lets make it move"),
    "video_tweak_start": ("got it updating the motion", "alright tweaking the animation", "lets refine the movement"),
    "saved_image": ("saved it for you", "all set", "done"),
    "saved_video": ("saved it for you", "your clip is ready", "done"),
}

FALLBACK_LINES: dict[str, tuple[str, ...]] = {
    "scanned": ("got it", "noted", "perfect got it"),
    "thinking": ("give me a second", "putting it together", "almost there"),
    "final": ("all set", "here you go", "done"),
}

# stages whose chatter never borrows from the shared pool
STRICT_STAGES = frozenset({"queued", "done", "error", "suggested"})


def _clean(x: Any) -> str:
    if x is None:
        return ""
    return (x if isinstance(x, str) else str(x)).strip()


def _dedupe(lines: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for s in lines:
        if s and s not in seen:
            seen.add(s)
            out.append(s)
    return out


BIG_POOL: tuple[str, ...] = tuple(
    _dedupe(
        [line for lines in STATUS_LINES.values() for line in lines]
        + [line for lines in FALLBACK_LINES.values() for line in lines]
    )
)


def pick(lines: Iterable[str], fallback: str = "") -> str:
    a = [s for s in lines if s]
    if not a:
        return fallback
    return random.choice(a)


def mixed_pool(stage: str) -> list[str]:
    stage_lines = [s for s in (_clean(x) for x in STATUS_LINES.get(stage, ())) if s]
    if not stage_lines:
        return list(BIG_POOL)
    if stage in STRICT_STAGES:
        return stage_lines
    return _dedupe(stage_lines + list(BIG_POOL))


def pick_avoid(pool: Iterable[str], avoid: Any = "", fallback: str = "") -> str:
    a = [s for s in pool if s]
    if not a:
        return fallback
    avoid_text = _clean(avoid)
    if avoid_text:
        others = [s for s in a if s != avoid_text]
        if others:
            return random.choice(others)
    return random.choice(a)


def quick_line(key: str, fallback: str = "") -> str:
    return pick(QUICK_LINES.get(key, ()), fallback)


def fallback_line(key: str) -> str:
    return pick(FALLBACK_LINES.get(key, ()), "okay")


def to_user_status(internal_status: Any) -> str:
    stage = _clean(internal_status) or "queued"
    return pick_avoid(mixed_pool(stage), "", pick(STATUS_LINES["queued"], "okay"))
