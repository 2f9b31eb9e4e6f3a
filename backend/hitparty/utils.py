import random
import string
import time

# No 0/O or 1/I so codes read cleanly off a shared screen.
JOIN_CODE_ALPHABET = "".join(c for c in string.ascii_uppercase + string.digits if c not in "01OI")


def now_ts() -> float:
    return time.time()


def generate_join_code(length: int = 6, rng: random.Random | None = None) -> str:
    rng = rng or random.SystemRandom()
    return "".join(rng.choice(JOIN_CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def sort_leaderboard(players):
    return sorted(players, key=lambda p: (-p.score, p.name.lower()))
