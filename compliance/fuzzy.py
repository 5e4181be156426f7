from rapidfuzz.distance import Levenshtein


def similarity(a: str, b: str) -> float:
    """Case-insensitive edit-distance similarity on a 0-100 scale."""
    a = (a or "").lower()
    b = (b or "").lower()
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 100.0
    distance = Levenshtein.distance(a, b)
    return (1 - distance / max_len) * 100
