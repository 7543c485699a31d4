import os

import pytest

from nodekeeper.exceptions import ChannelClosedError, ProtocolError
from nodekeeper.supervisor import (
    Ack,
    Channel,
    CreateRequest,
    Flare,
    FrameDecoder,
    NodeConfig,
    StatusRequest,
    encode_frame,
)
from nodekeeper.supervisor._channel import HEADER, MAX_FRAME_SIZE
from nodekeeper.supervisor._messages import encode_message


class TestEncodeFrame:
    def test_prefixes_big_endian_length(self) -> None:
        assert encode_frame(b"abc") == b"\x00\x00\x00\x03abc"

    def test_empty_payload(self) -> None:
        assert encode_frame(b"") == b"\x00\x00\x00\x00"

    def test_rejects_oversized_payload(self) -> None:
        with pytest.raises(ProtocolError, match="exceeds"):
            _ = encode_frame(b"x" * (MAX_FRAME_SIZE + 1))


class TestFrameDecoder:
    def test_decodes_complete_frames(self) -> None:
        decoder = FrameDecoder()

        frames = decoder.feed(encode_frame(b"one") + encode_frame(b"two"))

        assert frames == [b"one", b"two"]
        assert decoder.pending == 0

    def test_buffers_partial_header(self) -> None:
        decoder = FrameDecoder()
        data = encode_frame(b"hello")

        assert decoder.feed(data[:2]) == []
        assert decoder.feed(data[2:]) == [b"hello"]

    def test_buffers_partial_payload(self) -> None:
        decoder = FrameDecoder()
        data = encode_frame(b"hello")

        assert decoder.feed(data[:6]) == []
        assert decoder.pending == 6
        assert decoder.feed(data[6:]) == [b"hello"]

    def test_rejects_oversized_header(self) -> None:
        decoder = FrameDecoder()

        with pytest.raises(ProtocolError):
            _ = decoder.feed(HEADER.pack(MAX_FRAME_SIZE + 1))


class TestChannel:
    def test_messages_arrive_in_order(
        self, channel_pair: tuple[Channel, Channel]
    ) -> None:
        supervisor_end, stem_end = channel_pair

        supervisor_end.send(CreateRequest(config=NodeConfig(name="a")))
        supervisor_end.send(StatusRequest(name="a"))

        assert stem_end.receive() == [
            CreateRequest(config=NodeConfig(name="a")),
            StatusRequest(name="a"),
        ]

    def test_receive_without_data_returns_nothing(
        self, channel_pair: tuple[Channel, Channel]
    ) -> None:
        _, stem_end = channel_pair

        assert stem_end.receive() == []
        assert not stem_end.at_eof

    def test_partial_frame_waits_for_rest(
        self, channel_pair: tuple[Channel, Channel]
    ) -> None:
        supervisor_end, stem_end = channel_pair
        frame = encode_frame(encode_message(Ack(message="ok")))

        _ = os.write(supervisor_end.write_fd, frame[:5])
        assert stem_end.receive() == []

        _ = os.write(supervisor_end.write_fd, frame[5:])
        assert stem_end.receive() == [Ack(message="ok")]

    def test_both_directions(self, channel_pair: tuple[Channel, Channel]) -> None:
        supervisor_end, stem_end = channel_pair

        stem_end.send(Ack())

        assert supervisor_end.receive() == [Ack()]

    def test_peer_close_sets_eof(self, channel_pair: tuple[Channel, Channel]) -> None:
        supervisor_end, stem_end = channel_pair
        supervisor_end.send(Ack())

        supervisor_end.close()

        assert stem_end.receive() == [Ack()]
        assert stem_end.at_eof

    def test_send_after_peer_close_raises(
        self, channel_pair: tuple[Channel, Channel]
    ) -> None:
        supervisor_end, stem_end = channel_pair
        stem_end.close()

        with pytest.raises(ChannelClosedError):
            supervisor_end.send(Ack())

    def test_send_on_closed_end_raises(
        self, channel_pair: tuple[Channel, Channel]
    ) -> None:
        supervisor_end, _ = channel_pair
        supervisor_end.close()

        assert supervisor_end.closed
        with pytest.raises(ChannelClosedError):
            supervisor_end.send(Ack())

    def test_close_is_idempotent(self, channel_pair: tuple[Channel, Channel]) -> None:
        supervisor_end, _ = channel_pair

        supervisor_end.close()
        supervisor_end.close()

        assert supervisor_end.read_fd == -1

    def test_undecodable_frame_raises_and_keeps_later_frames(
        self, channel_pair: tuple[Channel, Channel]
    ) -> None:
        supervisor_end, stem_end = channel_pair
        _ = os.write(supervisor_end.write_fd, encode_frame(b"not json"))
        supervisor_end.send(Ack(message="after"))

        with pytest.raises(ProtocolError):
            _ = stem_end.receive()

        assert stem_end.receive() == [Ack(message="after")]

    def test_oversized_frame_ends_the_stream(
        self, channel_pair: tuple[Channel, Channel]
    ) -> None:
        supervisor_end, stem_end = channel_pair
        _ = os.write(supervisor_end.write_fd, HEADER.pack(MAX_FRAME_SIZE + 1))

        with pytest.raises(ProtocolError):
            _ = stem_end.receive()

        assert stem_end.at_eof

    def test_set_inheritable(self, channel_pair: tuple[Channel, Channel]) -> None:
        _, stem_end = channel_pair

        stem_end.set_inheritable()

        assert os.get_inheritable(stem_end.read_fd)
        assert os.get_inheritable(stem_end.write_fd)


class TestFlare:
    def test_fire_makes_readable_and_extinguish_drains(self) -> None:
        flare = Flare()
        try:
            flare.fire()
            flare.fire()
            flare.extinguish()

            with pytest.raises(BlockingIOError):
                _ = os.read(flare.fileno(), 1)
        finally:
            flare.close()

    def test_fire_survives_full_pipe(self) -> None:
        flare = Flare()
        try:
            for _ in range(200_000):
                flare.fire()
        finally:
            flare.close()
