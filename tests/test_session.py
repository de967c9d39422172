# SPDX-License-Identifier: HRUL-1.0
"""Tests for the incremental decoder and the stop-sequence filter."""

from tokenpipe.backends.base import Tokenizer
from tokenpipe.pipeline.session import IncrementalDecoder, StopSequenceFilter


class ByteTokenizer(Tokenizer):
    """Token id = one UTF-8 byte; decoding replaces incomplete sequences."""

    def encode(self, text, add_special=True):
        return list(text.encode("utf-8"))

    def decode(self, token_ids):
        return bytes(token_ids).decode("utf-8", errors="replace")

    @property
    def eos_token_ids(self):
        return frozenset()


class TestIncrementalDecoder:
    """Text deltas from generated ids."""

    def test_ascii(self):
        decoder = IncrementalDecoder(ByteTokenizer())

        assert [decoder.push(b) for b in b"abc"] == ["a", "b", "c"]

    def test_multibyte_character_held_until_complete(self):
        """'é' is two bytes: nothing is emitted after the first one."""
        decoder = IncrementalDecoder(ByteTokenizer())
        first, second = "é".encode("utf-8")

        assert decoder.push(first) == ""
        assert decoder.push(second) == "é"

    def test_four_byte_emoji(self):
        decoder = IncrementalDecoder(ByteTokenizer())

        deltas = [decoder.push(b) for b in "a🙂b".encode("utf-8")]

        assert "".join(deltas) == "a🙂b"
        assert deltas.count("🙂") == 1

    def test_flush_releases_incomplete_tail(self):
        decoder = IncrementalDecoder(ByteTokenizer())
        decoder.push(ord("x"))
        decoder.push("é".encode("utf-8")[0])

        assert decoder.flush() == "\ufffd"
        assert decoder.flush() == ""

    def test_flush_when_nothing_pending(self):
        decoder = IncrementalDecoder(ByteTokenizer())
        decoder.push(ord("x"))

        assert decoder.flush() == ""


class TestStopSequenceFilter:
    """Stop-sequence matching across chunk boundaries."""

    def test_no_stop_sequences(self):
        f = StopSequenceFilter([])

        assert f.feed("anything") == ("anything", False)

    def test_match_within_chunk(self):
        f = StopSequenceFilter(["###"])

        assert f.feed("answer### rest") == ("answer", True)
        assert f.matched == "###"

    def test_match_across_chunks(self):
        f = StopSequenceFilter(["STOP"])

        assert f.feed("go ST") == ("go ", False)
        assert f.feed("OP now") == ("", True)

    def test_divergence_releases_held_text(self):
        f = StopSequenceFilter(["STOP"])
        f.feed("ST")

        assert f.feed("ART") == ("START", False)

    def test_earliest_of_several(self):
        f = StopSequenceFilter(["world", "lo"])

        released, hit = f.feed("hello world")

        assert hit
        assert released == "hel"
        assert f.matched == "lo"

    def test_nothing_after_match(self):
        f = StopSequenceFilter(["x"])
        f.feed("ax")

        assert f.feed("more") == ("", True)

    def test_drain_releases_held_back(self):
        f = StopSequenceFilter(["STOP"])
        f.feed("abc STO")

        assert f.drain("!") == "STO!"
