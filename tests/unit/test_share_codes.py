"""Unit tests for share code generation."""

import random
import string

import pytest

from mcp_server_fileshare.share_codes import (
    SHARE_CODE_ALPHABET,
    SHARE_CODE_PATTERN,
    ShareCodeGenerator,
    generate_share_code,
)


class TestShareCodeGenerator:
    """Test suite for ShareCodeGenerator."""

    def test_codes_are_eight_uppercase_alphanumerics(self):
        """Every code is exactly 8 characters drawn from A-Z0-9."""
        generator = ShareCodeGenerator()
        for _ in range(1000):
            code = generator.generate()
            assert len(code) == 8
            assert SHARE_CODE_PATTERN.match(code)
            assert set(code) <= set(SHARE_CODE_ALPHABET)

    def test_alphabet_has_36_symbols(self):
        assert SHARE_CODE_ALPHABET == string.ascii_uppercase + string.digits
        assert len(set(SHARE_CODE_ALPHABET)) == 36

    def test_seeded_rng_is_deterministic(self):
        """The generator is a pure function of its random source."""
        first = ShareCodeGenerator(rng=random.Random(42))
        second = ShareCodeGenerator(rng=random.Random(42))
        assert [first.generate() for _ in range(5)] == [second.generate() for _ in range(5)]

    def test_distribution_is_roughly_uniform(self):
        """Each symbol shows up close to 1/36 of the time."""
        generator = ShareCodeGenerator(rng=random.Random(7))
        counts = dict.fromkeys(SHARE_CODE_ALPHABET, 0)
        for _ in range(4500):
            for ch in generator.generate():
                counts[ch] += 1
        expected = 4500 * 8 / 36
        assert all(0.8 * expected < n < 1.2 * expected for n in counts.values())

    def test_custom_length_and_alphabet(self):
        generator = ShareCodeGenerator(length=4, alphabet="AB")
        code = generator.generate()
        assert len(code) == 4
        assert set(code) <= {"A", "B"}

    @pytest.mark.parametrize("kwargs", [{"length": 0}, {"alphabet": ""}])
    def test_invalid_configuration(self, kwargs):
        with pytest.raises(ValueError):
            ShareCodeGenerator(**kwargs)

    def test_module_helper(self):
        assert SHARE_CODE_PATTERN.match(generate_share_code())
