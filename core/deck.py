from typing import Iterable, Optional, Tuple

from constants import VOTE_DECK


class Deck:
    """Fixed, ordered set of allowed vote values."""

    def __init__(self, values: Optional[Iterable[str]] = None):
        values = tuple(values) if values is not None else VOTE_DECK
        if not values:
            raise ValueError("Deck needs at least one value")
        self.values: Tuple[str, ...] = values
        self._allowed = frozenset(values)

    def is_valid_vote(self, value) -> bool:
        return isinstance(value, str) and value in self._allowed

    def __contains__(self, value) -> bool:
        return self.is_valid_vote(value)

    def __iter__(self):
        return iter(self.values)

    def __len__(self):
        return len(self.values)


default_deck = Deck()


def is_valid_vote(value) -> bool:
    return default_deck.is_valid_vote(value)
