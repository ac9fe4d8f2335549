"""
FramedLink Tests
Tests for line framing, checksum filtering and closure
"""

import asyncio

import pytest
from unittest.mock import Mock

from testkit.communication.framed_link import FramedLink, LinkConfig
from testkit.constants import MAX_LINE_LENGTH
from testkit.communication.protocol import add_checksum
from testkit.communication.transport_base import (
    ConnectionError,
    LinkClosedError,
    MockTransport,
    TimeoutError,
)


@pytest.fixture
def mock_transport():
    return MockTransport()


@pytest.fixture
async def open_link(mock_transport):
    link = FramedLink("MOCK1", LinkConfig(write_delay=0), mock_transport)
    await link.open()
    yield link
    await link.close()


class TestOpen:
    """Test opening the link."""

    @pytest.mark.asyncio
    async def test_open_passes_serial_settings(self, mock_transport):
        link = FramedLink("MOCK1", LinkConfig(baud_rate=9600, flow_control=False), mock_transport)
        await link.open()

        assert link.is_open
        assert mock_transport.connect_kwargs == {"baudrate": 9600, "rtscts": False}
        await link.close()

    @pytest.mark.asyncio
    async def test_open_failure(self):
        link = FramedLink("BUSY", LinkConfig(), MockTransport(fail_connect=True))
        with pytest.raises(ConnectionError):
            await link.open()
        assert not link.is_open

    @pytest.mark.asyncio
    async def test_cannot_reopen(self, mock_transport):
        link = FramedLink("MOCK1", LinkConfig(), mock_transport)
        await link.open()
        await link.close()
        with pytest.raises(LinkClosedError):
            await link.open()


class TestWrite:
    """Test the write path."""

    @pytest.mark.asyncio
    async def test_appends_checksum_and_terminator(self, open_link, mock_transport):
        await open_link.write("ATE:ping")

        assert mock_transport.get_tx_log() == [(add_checksum("ATE:ping") + "\r\n").encode()]
        assert open_link.stats.lines_written == 1

    @pytest.mark.asyncio
    async def test_without_crc(self, mock_transport):
        link = FramedLink("MOCK1", LinkConfig(crc_enabled=False, write_delay=0), mock_transport)
        await link.open()
        await link.write("ATE:ping")

        assert mock_transport.get_tx_lines() == ["ATE:ping"]
        await link.close()

    @pytest.mark.asyncio
    async def test_write_after_close(self, open_link):
        await open_link.close()
        with pytest.raises(LinkClosedError):
            await open_link.write("ATE:ping")

    @pytest.mark.asyncio
    async def test_write_delay(self, mock_transport):
        """The line goes out only after the pacing delay."""
        link = FramedLink("MOCK1", LinkConfig(write_delay=0.05), mock_transport)
        await link.open()

        task = asyncio.create_task(link.write("ATE:ping"))
        await asyncio.sleep(0.01)
        assert mock_transport.get_tx_log() == []

        await task
        assert len(mock_transport.get_tx_log()) == 1
        await link.close()


class TestReceive:
    """Test the receive path."""

    @pytest.mark.asyncio
    async def test_valid_frame(self, open_link, mock_transport):
        mock_transport.inject_line(add_checksum("ATE:ping=ok"))

        assert await open_link.read_line(timeout=0.1) == "ATE:ping=ok"
        assert open_link.stats.frames_received == 1

    @pytest.mark.asyncio
    async def test_split_across_chunks(self, open_link, mock_transport):
        wire = (add_checksum("DUT:fullid=1234") + "\r\n").encode()
        mock_transport.inject_data(wire[:5])
        mock_transport.inject_data(wire[5:])

        assert await open_link.read_line(timeout=0.1) == "DUT:fullid=1234"

    @pytest.mark.asyncio
    async def test_several_lines_in_one_chunk(self, open_link, mock_transport):
        data = "".join(add_checksum(line) + "\r\n" for line in ("ATE:a=1", "ATE:b=2"))
        mock_transport.inject_data(data.encode())

        assert await open_link.read_line(timeout=0.1) == "ATE:a=1"
        assert await open_link.read_line(timeout=0.1) == "ATE:b=2"

    @pytest.mark.asyncio
    async def test_lf_only_terminator(self, open_link, mock_transport):
        mock_transport.inject_data((add_checksum("ATE:ping=ok") + "\n").encode())
        assert await open_link.read_line(timeout=0.1) == "ATE:ping=ok"

    @pytest.mark.asyncio
    async def test_unterminated_noise_dropped(self, open_link, mock_transport):
        mock_transport.inject_data(b"\x00" * (MAX_LINE_LENGTH + 1))
        assert open_link.stats.overruns == 1

        # The next real frame is not glued to the noise
        mock_transport.inject_line(add_checksum("ATE:ping=ok"))
        assert await open_link.read_line(timeout=0.1) == "ATE:ping=ok"
        assert open_link.stats.checksum_errors == 0

    @pytest.mark.asyncio
    async def test_long_terminated_line_is_not_an_overrun(self, open_link, mock_transport):
        mock_transport.inject_line(add_checksum("ATE:meas_pins=X:" + "1" * MAX_LINE_LENGTH))
        assert (await open_link.read_line(timeout=0.1)).startswith("ATE:meas_pins=")
        assert open_link.stats.overruns == 0

    @pytest.mark.asyncio
    async def test_bad_checksum_dropped(self, open_link, mock_transport):
        mock_transport.inject_line("ATE:ping=ok#00")
        mock_transport.inject_line(add_checksum("ATE:ping=ok"))

        assert await open_link.read_line(timeout=0.1) == "ATE:ping=ok"
        assert open_link.stats.checksum_errors == 1

    @pytest.mark.asyncio
    async def test_missing_checksum_dropped(self, open_link, mock_transport):
        mock_transport.inject_line("ATE:ping=ok")
        with pytest.raises(TimeoutError):
            await open_link.read_line(timeout=0.05)
        assert open_link.stats.checksum_errors == 1

    @pytest.mark.asyncio
    async def test_comment_dropped_before_checksum(self, open_link, mock_transport):
        mock_transport.inject_line("* boot message without checksum")
        mock_transport.inject_line("")
        mock_transport.inject_line(add_checksum("ATE:ping=ok"))

        assert await open_link.read_line(timeout=0.1) == "ATE:ping=ok"
        assert open_link.stats.comments == 1
        assert open_link.stats.checksum_errors == 0

    @pytest.mark.asyncio
    async def test_without_crc_frames_pass_unchanged(self, mock_transport):
        link = FramedLink("MOCK1", LinkConfig(crc_enabled=False, write_delay=0), mock_transport)
        await link.open()
        mock_transport.inject_line("ATE:ping=ok")

        assert await link.read_line(timeout=0.1) == "ATE:ping=ok"
        await link.close()

    @pytest.mark.asyncio
    async def test_read_timeout(self, open_link):
        with pytest.raises(TimeoutError):
            await open_link.read_line(timeout=0.02)

    @pytest.mark.asyncio
    async def test_lines_iterator_ends_on_close(self, open_link, mock_transport):
        mock_transport.inject_line(add_checksum("ATE:a=1"))
        mock_transport.inject_line(add_checksum("ATE:b=2"))

        received = []

        async def consume():
            async for line in open_link.lines():
                received.append(line)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.01)
        await open_link.close()
        await asyncio.wait_for(task, timeout=0.5)

        assert received == ["ATE:a=1", "ATE:b=2"]

    @pytest.mark.asyncio
    async def test_read_line_after_close(self, open_link):
        await open_link.close()
        with pytest.raises(LinkClosedError):
            await open_link.read_line(timeout=0.1)


class TestFlush:
    """Test input flushing."""

    @pytest.mark.asyncio
    async def test_flush_discards_frames_and_partial_data(self, open_link, mock_transport):
        mock_transport.inject_line(add_checksum("ATE:old=1"))
        mock_transport.inject_data(b"ATE:part")

        await open_link.flush()
        mock_transport.inject_line(add_checksum("ATE:new=1"))

        assert await open_link.read_line(timeout=0.1) == "ATE:new=1"
        assert mock_transport.flush_count == 1


class TestClose:
    """Test closure notification."""

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, open_link):
        callback = Mock()
        open_link.add_closed_callback(callback)

        await open_link.close()
        await open_link.close()

        callback.assert_called_once_with(open_link)
        assert not open_link.is_open

    @pytest.mark.asyncio
    async def test_transport_loss_closes_link(self, open_link, mock_transport):
        callback = Mock()
        open_link.add_closed_callback(callback)

        mock_transport.simulate_disconnect()
        await asyncio.sleep(0)

        callback.assert_called_once_with(open_link)
        assert not open_link.is_open
        await open_link._close_task
        assert open_link._close_task.done()

    @pytest.mark.asyncio
    async def test_removed_callback_not_called(self, open_link):
        callback = Mock()
        open_link.add_closed_callback(callback)
        open_link.remove_closed_callback(callback)

        await open_link.close()
        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_close(self, open_link):
        failing = Mock(side_effect=RuntimeError("boom"))
        other = Mock()
        open_link.add_closed_callback(failing)
        open_link.add_closed_callback(other)

        await open_link.close()
        other.assert_called_once()
