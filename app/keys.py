import random


def normalize_key(raw: str) -> str:
    return raw.strip().upper()


class KeyGenerator:
    """Draws pairing codes uniformly from ``alphabet ** length``.

    Knows nothing about live sessions; callers retry on collision.
    """

    def __init__(self, alphabet: str, length: int, rng: random.Random | None = None):
        alphabet = alphabet.upper()
        if not alphabet or length < 1:
            raise ValueError("alphabet and length must be non-empty")
        if len(set(alphabet)) != len(alphabet):
            raise ValueError("alphabet must not repeat characters")
        self.alphabet = alphabet
        self.length = length
        self._rng = rng or random.Random()

    @property
    def keyspace_size(self) -> int:
        return len(self.alphabet) ** self.length

    def generate(self) -> str:
        index = self._rng.randrange(self.keyspace_size)
        base = len(self.alphabet)
        chars = []
        for _ in range(self.length):
            index, digit = divmod(index, base)
            chars.append(self.alphabet[digit])
        return "".join(reversed(chars))
