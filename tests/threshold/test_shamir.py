"""Tests for Shamir sharing over GF(2^521 - 1)."""

from __future__ import annotations

import itertools
import os

import pytest

from capshare.threshold import shamir


@pytest.fixture
def secret():
    return os.urandom(32)


class TestSplitCombine:
    def test_any_two_of_three(self, secret):
        shares = shamir.split(secret, 2, 3)
        for pair in itertools.combinations(shares, 2):
            assert shamir.combine(list(pair)) == secret

    def test_more_than_threshold(self, secret):
        assert shamir.combine(shamir.split(secret, 2, 5)) == secret

    def test_threshold_one_is_replication(self, secret):
        shares = shamir.split(secret, 1, 3)
        assert {y for _, y in shares} == {int.from_bytes(secret, "big")}

    def test_below_threshold_does_not_recover(self, secret):
        shares = shamir.split(secret, 3, 3)
        with pytest.raises(ValueError):
            shamir.combine(shares[:2])

    def test_fresh_randomness_per_split(self, secret):
        assert shamir.split(secret, 2, 3) != shamir.split(secret, 2, 3)


class TestValidation:
    @pytest.mark.parametrize("threshold,count", [(0, 3), (4, 3), (2, 256)])
    def test_bad_parameters(self, secret, threshold, count):
        with pytest.raises(ValueError):
            shamir.split(secret, threshold, count)

    def test_secret_length(self):
        with pytest.raises(ValueError):
            shamir.split(b"short", 1, 1)

    def test_duplicate_points(self, secret):
        share = shamir.split(secret, 2, 3)[0]
        with pytest.raises(ValueError):
            shamir.combine([share, share])

    def test_empty(self):
        with pytest.raises(ValueError):
            shamir.combine([])


class TestShareEncoding:
    def test_round_trip(self, secret):
        share = shamir.split(secret, 2, 3)[2]
        encoded = shamir.encode_share(share)
        assert len(encoded) == 1 + shamir.SHARE_Y_BYTES
        assert shamir.decode_share(encoded) == share

    def test_malformed(self):
        with pytest.raises(ValueError):
            shamir.decode_share(b"\x01\x02")
