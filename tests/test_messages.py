"""Tests for conversation log parsing."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

from convopulse.analysis.messages import (
    AssistantMessage,
    Usage,
    UserMessage,
    correlate_entries,
    decode_lines,
    parse_conversation_text,
    parse_timestamp,
    read_tail_messages,
)
from tests.utils import assistant_entry, tool_result_entry, tool_use_entry, usage, user_entry, write_jsonl

T0 = datetime(2025, 6, 15, 10, 0, tzinfo=timezone.utc)


def _text(entries: list[dict]) -> str:
    return "".join(json.dumps(e) + "\n" for e in entries)


class TestParseTimestamp:
    """Tests for parse_timestamp."""

    def test_zulu_suffix(self) -> None:
        """A trailing Z is read as UTC."""
        assert parse_timestamp("2025-06-15T10:00:00.123Z") == datetime(
            2025, 6, 15, 10, 0, 0, 123000, tzinfo=timezone.utc
        )

    def test_offset_converted_to_utc(self) -> None:
        """Explicit offsets are normalized to UTC."""
        parsed = parse_timestamp("2025-06-15T12:00:00+02:00")
        assert parsed == T0
        assert parsed.tzinfo == timezone.utc

    def test_naive_assumed_utc(self) -> None:
        """A timestamp without offset is treated as UTC."""
        assert parse_timestamp("2025-06-15T10:00:00") == T0

    def test_epoch_milliseconds(self) -> None:
        """Numbers are epoch milliseconds."""
        assert parse_timestamp(T0.timestamp() * 1000) == T0

    def test_invalid_values(self) -> None:
        """Garbage, empty strings, booleans and None parse to None."""
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp("") is None
        assert parse_timestamp(True) is None
        assert parse_timestamp(None) is None


class TestUsage:
    """Tests for the Usage record."""

    def test_from_dict(self) -> None:
        """Known counters and the service tier are read."""
        parsed = Usage.from_dict(usage(120, 30, cache_creation_input_tokens=80, cache_read_input_tokens=7))
        assert parsed is not None
        assert parsed.input_tokens == 120
        assert parsed.output_tokens == 30
        assert parsed.cache_read_input_tokens == 7
        assert parsed.service_tier == "standard"
        assert parsed.prompt_tokens == 200

    def test_non_dict_is_none(self) -> None:
        """Anything but an object yields no usage."""
        assert Usage.from_dict(None) is None
        assert Usage.from_dict([1, 2]) is None

    def test_non_numeric_counters_are_zero(self) -> None:
        """Strings and booleans in counters count as zero."""
        parsed = Usage.from_dict({"input_tokens": "12", "output_tokens": True})
        assert parsed is not None
        assert parsed.input_tokens == 0
        assert parsed.output_tokens == 0


class TestDecodeLines:
    """Tests for decode_lines."""

    def test_skips_blank_malformed_and_non_objects(self) -> None:
        """Only JSON objects survive decoding."""
        lines = ["", "   ", "{not json", "[1, 2]", '"text"', '{"type": "user"}']
        assert decode_lines(lines) == [{"type": "user"}]


class TestCorrelateEntries:
    """Tests for message construction and tool result folding."""

    def test_plain_turns(self) -> None:
        """User and assistant turns become typed messages in order."""
        messages = correlate_entries(
            [user_entry(T0, "hi"), assistant_entry(T0 + timedelta(seconds=3), usage=usage())]
        )

        assert [type(m) for m in messages] == [UserMessage, AssistantMessage]
        assert messages[0].text() == "hi"
        assert messages[1].model == "claude-sonnet-4"
        assert messages[1].usage is not None

    def test_tool_result_attached_to_owner(self) -> None:
        """A tool result is folded into the assistant message that issued the call."""
        messages = correlate_entries(
            [
                user_entry(T0, "list files"),
                tool_use_entry(T0 + timedelta(seconds=1), "toolu_1"),
                tool_result_entry(
                    T0 + timedelta(seconds=2),
                    "toolu_1",
                    "a.txt",
                    extra={"stdout": "a.txt", "stderr": "", "interrupted": False},
                ),
            ]
        )

        assert len(messages) == 2
        owner = messages[1]
        assert isinstance(owner, AssistantMessage)
        assert len(owner.tool_results) == 1
        result = owner.tool_results[0]
        assert result.tool_use_id == "toolu_1"
        assert result.content == "a.txt"
        assert result.stdout == "a.txt"

    def test_orphan_tool_result_dropped(self) -> None:
        """A result whose tool_use is unknown produces nothing."""
        messages = correlate_entries([user_entry(T0), tool_result_entry(T0 + timedelta(seconds=1), "toolu_x")])
        assert len(messages) == 1
        assert messages[0].tool_results == []

    def test_entries_without_timestamp_or_message_skipped(self) -> None:
        """Entries missing a timestamp or message object are ignored."""
        no_ts = user_entry(T0)
        del no_ts["timestamp"]
        entries = [
            no_ts,
            {"type": "user", "timestamp": "2025-06-15T10:00:00Z"},
            {"type": "summary", "summary": "Refactor", "leafUuid": "x"},
            assistant_entry(T0),
        ]

        messages = correlate_entries(entries)
        assert [m.role for m in messages] == ["assistant"]

    def test_dict_content_wrapped_in_list(self) -> None:
        """A single content object is treated as a one-block list."""
        entry = assistant_entry(T0, content=[])
        entry["message"]["content"] = {"type": "text", "text": "solo"}

        message = correlate_entries([entry])[0]
        assert message.content == [{"type": "text", "text": "solo"}]
        assert message.text() == "solo"

    def test_message_id_falls_back_to_uuid(self) -> None:
        """Entries without a message id use the entry uuid."""
        message = correlate_entries([user_entry(T0, uuid="u-42")])[0]
        assert message.message_id == "u-42"

    def test_compact_summary_flag(self) -> None:
        """isCompactSummary is carried onto the message."""
        entry = user_entry(T0)
        entry["isCompactSummary"] = True
        assert correlate_entries([entry])[0].is_compact_summary is True

    def test_to_dict_shape(self) -> None:
        """Serialized messages carry camelCase tool result keys."""
        messages = parse_conversation_text(
            _text([tool_use_entry(T0, "toolu_1"), tool_result_entry(T0 + timedelta(seconds=1), "toolu_1")])
        )
        data = messages[0].to_dict()

        assert data["role"] == "assistant"
        assert data["timestamp"] == T0.isoformat()
        assert data["toolResults"][0]["tool_use_id"] == "toolu_1"
        assert "isImage" in data["toolResults"][0]


class TestReadTailMessages:
    """Tests for read_tail_messages."""

    def test_small_file_read_whole(self, tmp_path: Path) -> None:
        """A file under the limit is parsed completely."""
        path = write_jsonl(tmp_path / "a.jsonl", [user_entry(T0), assistant_entry(T0 + timedelta(seconds=1))])
        assert len(read_tail_messages(path)) == 2

    def test_only_tail_parsed(self, tmp_path: Path) -> None:
        """Only whole lines inside the tail window are parsed."""
        entries = [user_entry(T0 + timedelta(seconds=i), text="x" * 100) for i in range(50)]
        path = write_jsonl(tmp_path / "b.jsonl", entries)

        messages = read_tail_messages(path, max_bytes=1000)

        assert 0 < len(messages) < 50
        assert messages[-1].timestamp == T0 + timedelta(seconds=49)
        assert all(m.timestamp > T0 for m in messages)
