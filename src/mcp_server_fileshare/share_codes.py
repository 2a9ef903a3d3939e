"""Share code generation."""

from __future__ import annotations

import random
import re
import string

SHARE_CODE_LENGTH = 8
SHARE_CODE_ALPHABET = string.ascii_uppercase + string.digits
SHARE_CODE_PATTERN = re.compile(rf"^[A-Z0-9]{{{SHARE_CODE_LENGTH}}}$")


class ShareCodeGenerator:
    """Draws short human-typeable codes uniformly from ``[A-Z0-9]``.

    Not a secret: codes only need to be hard to collide, not hard to guess.
    """

    def __init__(
        self,
        length: int = SHARE_CODE_LENGTH,
        alphabet: str = SHARE_CODE_ALPHABET,
        rng: random.Random | None = None,
    ) -> None:
        if length <= 0:
            raise ValueError("length must be positive")
        if not alphabet:
            raise ValueError("alphabet must not be empty")
        self._length = length
        self._alphabet = alphabet
        self._rng = rng or random.Random()

    def generate(self) -> str:
        return "".join(self._rng.choices(self._alphabet, k=self._length))


def generate_share_code() -> str:
    """Generate a code with the default length and alphabet."""
    return ShareCodeGenerator().generate()
