import enum
import random
from typing import Mapping, Optional, Protocol, Sequence, Tuple

API_KEY_HEADER = "x-goog-api-key"
AUTHORIZATION_HEADER = "authorization"
BEARER_PREFIX = "bearer "


class KeySource(enum.Enum):
    """Which header convention supplied the key list for a request."""

    DIRECT = API_KEY_HEADER
    BEARER = AUTHORIZATION_HEADER


class KeySelector(Protocol):
    def pick(self, keys: Sequence[str]) -> str:
        ...


class RandomKeySelector:
    """Spreads load by picking a key uniformly at random."""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def pick(self, keys: Sequence[str]) -> str:
        return keys[self.rng.randrange(len(keys))]


def extract_key_source(headers: Mapping[str, str]) -> Tuple[Optional[KeySource], str]:
    """Return the source kind and raw value of the key list, if any.

    A non-empty ``x-goog-api-key`` wins over ``Authorization: Bearer`` when both are sent.
    """
    direct = headers.get(API_KEY_HEADER)
    if direct:
        return KeySource.DIRECT, direct

    authorization = headers.get(AUTHORIZATION_HEADER)
    if authorization and authorization.lower().startswith(BEARER_PREFIX):
        return KeySource.BEARER, authorization[len(BEARER_PREFIX):]

    return None, ""


def parse_keys(raw: str) -> list[str]:
    return [key.strip() for key in raw.split(",") if key.strip()]


def select_key(
    headers: Mapping[str, str], selector: KeySelector
) -> Tuple[Optional[KeySource], Optional[str]]:
    source, raw = extract_key_source(headers)
    if source is None:
        return None, None

    keys = parse_keys(raw)
    if not keys:
        return source, None
    return source, selector.pick(keys)


def mask_key(key: str) -> str:
    if len(key) <= 8:
        return "***"
    return f"{key[:4]}...{key[-4:]}"
