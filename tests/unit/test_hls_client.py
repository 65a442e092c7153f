"""Unit tests for the HLS streaming client."""

import time
from unittest.mock import Mock

import pytest
import requests
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from animestream.core import HlsClient, HlsConfig, HlsEvent
from animestream.core.errors import (
    ErrorDetails,
    ErrorType,
    NetworkFatalError,
    UnrecoverableFatalError,
    classify_error,
)

BASE = "https://cdn.test/show"

MASTER = """#EXTM3U
#EXT-X-STREAM-INF:BANDWIDTH=800000,RESOLUTION=640x360
360/index.m3u8
#EXT-X-STREAM-INF:BANDWIDTH=2800000,RESOLUTION=1280x720
720/index.m3u8
"""

MEDIA = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:10
#EXT-X-MEDIA-SEQUENCE:0
#EXTINF:10.0,
seg0.ts
#EXTINF:8.5,
seg1.ts
#EXT-X-ENDLIST
"""

KEY = bytes(range(16))


def encrypt(data: bytes, iv: bytes) -> bytes:
    padder = padding.PKCS7(128).padder()
    padded = padder.update(data) + padder.finalize()
    encryptor = Cipher(algorithms.AES(KEY), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


class DeferredDispatcher:
    """Queues callbacks until flush()."""

    def __init__(self):
        self.pending = []

    def call_soon(self, fn, *args):
        self.pending.append((fn, args))

    def flush(self):
        pending, self.pending = self.pending, []
        for fn, args in pending:
            fn(*args)


def make_client(session, **config):
    config.setdefault("retry_delay", 0.0)
    config.setdefault("max_buffer_length", 1e9)
    client = HlsClient(HlsConfig(**config), runner=lambda job: job(), session=session)
    events = []
    for event in HlsEvent:
        client.on(event, lambda e, data: events.append((e, data)))
    return client, events


def errors_of(events):
    return [data for e, data in events if e is HlsEvent.ERROR]


class TestLoading:
    """Tests for manifest, level and fragment loading."""

    def test_media_playlist(self, media, make_session):
        session = make_session({
            f"{BASE}/index.m3u8": MEDIA,
            f"{BASE}/seg0.ts": b"seg0",
            f"{BASE}/seg1.ts": b"seg1",
        })
        client, events = make_client(session)
        client.attach_media(media)
        client.load_source(f"{BASE}/index.m3u8")

        kinds = [e for e, _ in events]
        assert kinds[0] is HlsEvent.MEDIA_ATTACHED
        assert HlsEvent.MANIFEST_PARSED in kinds
        level = next(d for e, d in events if e is HlsEvent.LEVEL_LOADED)
        assert level["fragments"] == 2
        assert level["total_duration"] == pytest.approx(18.5)
        assert media.appended == [(b"seg0", 10.0), (b"seg1", 8.5)]
        assert media.eos is True
        assert kinds[-1] is HlsEvent.BUFFER_EOS
        assert errors_of(events) == []

    def test_master_playlist_picks_highest_bandwidth(self, media, make_session):
        session = make_session({
            f"{BASE}/master.m3u8": MASTER,
            f"{BASE}/720/index.m3u8": MEDIA,
            f"{BASE}/720/seg0.ts": b"a",
            f"{BASE}/720/seg1.ts": b"b",
        })
        client, events = make_client(session)
        client.attach_media(media)
        client.load_source(f"{BASE}/master.m3u8")

        parsed = next(d for e, d in events if e is HlsEvent.MANIFEST_PARSED)
        assert len(parsed["levels"]) == 2
        assert parsed["first_level"] == 1
        assert client.levels[1].height == 720
        assert [d for d, _ in media.appended] == [b"a", b"b"]

    def test_start_level_overrides_selection(self, media, make_session):
        session = make_session({
            f"{BASE}/master.m3u8": MASTER,
            f"{BASE}/360/index.m3u8": MEDIA,
            f"{BASE}/360/seg0.ts": b"low0",
            f"{BASE}/360/seg1.ts": b"low1",
        })
        client, events = make_client(session, start_level=0)
        client.attach_media(media)
        client.load_source(f"{BASE}/master.m3u8")

        assert client.current_level == 0
        assert [d for d, _ in media.appended] == [b"low0", b"low1"]

    def test_request_hook_sees_every_url(self, media, make_session, rewriter):
        master = f"{BASE}/master.m3u8"
        routes = {
            master: MASTER,
            f"{BASE}/720/index.m3u8": MEDIA,
            f"{BASE}/720/seg0.ts": b"a",
            f"{BASE}/720/seg1.ts": b"b",
        }
        session = make_session({rewriter.rewrite(url): body for url, body in routes.items()})
        client, events = make_client(session, request_hook=rewriter.rewrite,
                                     resolve_base=rewriter.unwrap)
        client.attach_media(media)
        client.load_source(rewriter.rewrite(master))

        fetched = [call.args[0] for call in session.get.call_args_list]
        assert len(fetched) == 4
        assert all(rewriter.is_proxied(url) for url in fetched)
        assert errors_of(events) == []

    def test_not_a_playlist(self, media, make_session):
        session = make_session({f"{BASE}/index.m3u8": "<html>blocked</html>"})
        client, events = make_client(session)
        client.attach_media(media)
        client.load_source(f"{BASE}/index.m3u8")

        [error] = errors_of(events)
        assert error.fatal is True
        assert error.details is ErrorDetails.MANIFEST_PARSING_ERROR
        assert isinstance(classify_error(error), UnrecoverableFatalError)

    def test_manifest_http_error(self, media, make_session):
        failure = requests.HTTPError("404 Client Error", response=Mock(status_code=404))
        session = make_session({f"{BASE}/index.m3u8": failure})
        client, events = make_client(session, manifest_load_max_retry=0)
        client.attach_media(media)
        client.load_source(f"{BASE}/index.m3u8")

        [error] = errors_of(events)
        assert error.type is ErrorType.NETWORK_ERROR
        assert error.details is ErrorDetails.MANIFEST_LOAD_ERROR
        assert error.response_code == 404
        assert isinstance(classify_error(error), NetworkFatalError)

    def test_empty_playlist_is_incompatible(self, media, make_session):
        session = make_session({f"{BASE}/index.m3u8": "#EXTM3U\n#EXT-X-ENDLIST\n"})
        client, events = make_client(session)
        client.attach_media(media)
        client.load_source(f"{BASE}/index.m3u8")

        [error] = errors_of(events)
        assert error.details is ErrorDetails.MANIFEST_INCOMPATIBLE

    def test_fragment_retries_then_fatal(self, media, make_session):
        session = make_session({
            f"{BASE}/index.m3u8": MEDIA,
            f"{BASE}/seg0.ts": b"seg0",
        })
        client, events = make_client(session, frag_load_max_retry=2)
        client.attach_media(media)
        client.load_source(f"{BASE}/index.m3u8")

        errors = errors_of(events)
        assert [e.fatal for e in errors] == [False, False, True]
        assert all(e.details is ErrorDetails.FRAG_LOAD_ERROR for e in errors)
        assert media.appended == [(b"seg0", 10.0)]
        assert media.eos is False

    def test_manifest_retries_then_fatal(self, media, make_session):
        session = make_session({f"{BASE}/index.m3u8": requests.ConnectionError("reset")})
        client, events = make_client(session, manifest_load_max_retry=2)
        client.attach_media(media)
        client.load_source(f"{BASE}/index.m3u8")

        errors = errors_of(events)
        assert [e.fatal for e in errors] == [False, False, True]
        assert all(e.details is ErrorDetails.MANIFEST_LOAD_ERROR for e in errors)
        assert session.get.call_count == 3

    def test_manifest_recovers_within_retries(self, media, make_session):
        attempts = {"n": 0}

        def flaky():
            attempts["n"] += 1
            return requests.ConnectionError("reset") if attempts["n"] == 1 else MEDIA

        session = make_session({
            f"{BASE}/index.m3u8": flaky,
            f"{BASE}/seg0.ts": b"seg0",
            f"{BASE}/seg1.ts": b"seg1",
        })
        client, events = make_client(session, manifest_load_max_retry=1)
        client.attach_media(media)
        client.load_source(f"{BASE}/index.m3u8")

        [error] = errors_of(events)
        assert error.fatal is False
        assert media.eos is True

    def test_level_load_retries_then_fatal(self, media, make_session):
        session = make_session({
            f"{BASE}/master.m3u8": MASTER,
            f"{BASE}/720/index.m3u8": requests.ConnectionError("reset"),
        })
        client, events = make_client(session, manifest_load_max_retry=1)
        client.attach_media(media)
        client.load_source(f"{BASE}/master.m3u8")

        errors = errors_of(events)
        assert [e.fatal for e in errors] == [False, True]
        assert all(e.details is ErrorDetails.LEVEL_LOAD_ERROR for e in errors)

    def test_restart_after_fatal_error_backs_off(self, make_session):
        client, _ = make_client(make_session({}), retry_delay=1.0, max_retry_delay=3.0)
        assert client._restart_delay() == 0.0

        client._fatal_streak = 1
        assert client._restart_delay() == 1.0
        client._fatal_streak = 2
        assert client._restart_delay() == 2.0
        client._fatal_streak = 5
        assert client._restart_delay() == 3.0

    def test_repeated_start_load_is_rate_limited(self, media, make_session):
        session = make_session({f"{BASE}/index.m3u8": requests.ConnectionError("refused")})
        client = HlsClient(HlsConfig(retry_delay=0.05, manifest_load_max_retry=1), session=session)
        client.on(HlsEvent.ERROR, lambda e, data: data.fatal and client.start_load())
        client.attach_media(media)
        client.load_source(f"{BASE}/index.m3u8")

        time.sleep(0.5)
        client.destroy()
        fetches = session.get.call_count

        # Attempts are spaced by retry_delay * attempt plus a doubling restart delay
        assert 2 <= fetches <= 12
        time.sleep(0.1)
        assert session.get.call_count <= fetches + 1

    def test_start_load_resumes_after_failure(self, media, make_session):
        attempts = {"n": 0}

        def flaky():
            attempts["n"] += 1
            return requests.ConnectionError("reset") if attempts["n"] == 1 else b"seg1"

        session = make_session({
            f"{BASE}/index.m3u8": MEDIA,
            f"{BASE}/seg0.ts": b"seg0",
            f"{BASE}/seg1.ts": flaky,
        })
        client, events = make_client(session, frag_load_max_retry=0)
        client.attach_media(media)
        client.load_source(f"{BASE}/index.m3u8")
        assert media.appended == [(b"seg0", 10.0)]

        client.start_load()

        assert media.appended == [(b"seg0", 10.0), (b"seg1", 8.5)]
        assert media.eos is True

    def test_append_failure_is_media_error(self, media, make_session):
        session = make_session({
            f"{BASE}/index.m3u8": MEDIA,
            f"{BASE}/seg0.ts": b"seg0",
        })
        media.append_error = RuntimeError("decoder rejected segment")
        client, events = make_client(session)
        client.attach_media(media)
        client.load_source(f"{BASE}/index.m3u8")

        [error] = errors_of(events)
        assert error.type is ErrorType.MEDIA_ERROR
        assert error.details is ErrorDetails.BUFFER_APPEND_ERROR


class TestDecryption:
    """Tests for AES-128 segments."""

    def test_explicit_iv_and_key_cache(self, media, make_session):
        iv = (1).to_bytes(16, "big")
        playlist = (
            "#EXTM3U\n#EXT-X-TARGETDURATION:10\n"
            '#EXT-X-KEY:METHOD=AES-128,URI="key.bin",IV=0x00000000000000000000000000000001\n'
            "#EXTINF:10.0,\nseg0.ts\n#EXTINF:10.0,\nseg1.ts\n#EXT-X-ENDLIST\n"
        )
        session = make_session({
            f"{BASE}/index.m3u8": playlist,
            f"{BASE}/key.bin": KEY,
            f"{BASE}/seg0.ts": encrypt(b"first segment", iv),
            f"{BASE}/seg1.ts": encrypt(b"second segment", iv),
        })
        client, events = make_client(session)
        client.attach_media(media)
        client.load_source(f"{BASE}/index.m3u8")

        assert [d for d, _ in media.appended] == [b"first segment", b"second segment"]
        key_fetches = [c for c in session.get.call_args_list if c.args[0].endswith("key.bin")]
        assert len(key_fetches) == 1

    def test_iv_defaults_to_sequence_number(self, media, make_session):
        playlist = (
            "#EXTM3U\n#EXT-X-TARGETDURATION:10\n#EXT-X-MEDIA-SEQUENCE:5\n"
            '#EXT-X-KEY:METHOD=AES-128,URI="key.bin"\n'
            "#EXTINF:10.0,\nseg5.ts\n#EXT-X-ENDLIST\n"
        )
        session = make_session({
            f"{BASE}/index.m3u8": playlist,
            f"{BASE}/key.bin": KEY,
            f"{BASE}/seg5.ts": encrypt(b"payload", (5).to_bytes(16, "big")),
        })
        client, events = make_client(session)
        client.attach_media(media)
        client.load_source(f"{BASE}/index.m3u8")

        assert media.appended == [(b"payload", 10.0)]

    def test_bad_ciphertext(self, media, make_session):
        playlist = (
            "#EXTM3U\n#EXT-X-TARGETDURATION:10\n"
            '#EXT-X-KEY:METHOD=AES-128,URI="key.bin"\n'
            "#EXTINF:10.0,\nseg0.ts\n#EXT-X-ENDLIST\n"
        )
        session = make_session({
            f"{BASE}/index.m3u8": playlist,
            f"{BASE}/key.bin": KEY,
            f"{BASE}/seg0.ts": b"not sixteen bytes",
        })
        client, events = make_client(session)
        client.attach_media(media)
        client.load_source(f"{BASE}/index.m3u8")

        [error] = errors_of(events)
        assert error.type is ErrorType.MEDIA_ERROR
        assert error.details is ErrorDetails.FRAG_DECRYPT_ERROR

    def test_unsupported_method(self, media, make_session):
        playlist = (
            "#EXTM3U\n#EXT-X-TARGETDURATION:10\n"
            '#EXT-X-KEY:METHOD=SAMPLE-AES,URI="key.bin"\n'
            "#EXTINF:10.0,\nseg0.ts\n#EXT-X-ENDLIST\n"
        )
        session = make_session({
            f"{BASE}/index.m3u8": playlist,
            f"{BASE}/seg0.ts": b"x" * 16,
        })
        client, events = make_client(session)
        client.attach_media(media)
        client.load_source(f"{BASE}/index.m3u8")

        [error] = errors_of(events)
        assert error.details is ErrorDetails.MANIFEST_INCOMPATIBLE
        assert media.appended == []


def long_playlist(count: int, duration: float = 10.0) -> str:
    lines = ["#EXTM3U", "#EXT-X-TARGETDURATION:10", "#EXT-X-MEDIA-SEQUENCE:0"]
    for i in range(count):
        lines += [f"#EXTINF:{duration},", f"frag{i}.ts"]
    lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines) + "\n"


def wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestSeeking:
    """Tests for seeking within and past the forward buffer."""

    @pytest.fixture
    def long_stream(self, media, make_session):
        routes = {f"{BASE}/index.m3u8": long_playlist(100)}
        routes.update({f"{BASE}/frag{i}.ts": f"frag{i}".encode() for i in range(100)})
        # A long poll keeps the first loader parked once its buffer is full
        client = HlsClient(HlsConfig(max_buffer_length=30, buffer_poll_interval=5.0),
                           session=make_session(routes))
        client.attach_media(media)
        client.load_source(f"{BASE}/index.m3u8")
        assert wait_until(lambda: len(media.appended) == 3)
        yield client
        client.destroy()

    def test_buffer_stops_at_max_length(self, media, long_stream):
        time.sleep(0.05)
        assert [d for d, _ in media.appended] == [b"frag0", b"frag1", b"frag2"]

    def test_seek_past_buffer_reloads_from_target_fragment(self, media, long_stream):
        media.seek(500)
        long_stream.seek_to(500)

        assert wait_until(lambda: len(media.appended) > 3)
        assert media.appended[3] == (b"frag50", 10.0)
        assert media.buffer_opens == 2
        assert wait_until(lambda: len(media.appended) == 6)
        assert [d for d, _ in media.appended[3:]] == [b"frag50", b"frag51", b"frag52"]

    def test_seek_inside_buffer_keeps_loading(self, media, long_stream):
        media.seek(15)
        long_stream.seek_to(15)

        assert media.buffer_opens == 1
        assert media.buffer_closes == 0

    def test_seek_before_levels_load_is_ignored(self, media, make_session):
        client, events = make_client(make_session({}), manifest_load_max_retry=0)
        client.attach_media(media)
        client.seek_to(30)

        assert media.buffer_opens == 1
        assert errors_of(events) == []


class TestLifecycle:
    """Tests for attach, recovery and destroy."""

    def test_is_supported(self, make_media):
        assert HlsClient.is_supported(make_media(buffered=True)) is True
        assert HlsClient.is_supported(make_media(buffered=False)) is False

    def test_attach_failure(self, media, make_session):
        media.open_error = RuntimeError("no decoder")
        client, events = make_client(make_session({}))
        client.attach_media(media)

        [error] = errors_of(events)
        assert error.fatal is True
        assert error.details is ErrorDetails.MEDIA_ATTACH_ERROR
        assert all(e is not HlsEvent.MEDIA_ATTACHED for e, _ in events)

    def test_recover_media_error_resumes_at_position(self, media, make_session):
        session = make_session({
            f"{BASE}/index.m3u8": MEDIA,
            f"{BASE}/seg0.ts": b"seg0",
            f"{BASE}/seg1.ts": b"seg1",
        })
        client, events = make_client(session)
        client.attach_media(media)
        client.load_source(f"{BASE}/index.m3u8")

        media._time = 12.0
        client.recover_media_error()

        assert media.buffer_opens == 2
        assert media.buffer_closes == 1
        assert media.appended[-1] == (b"seg1", 8.5)
        assert len(media.appended) == 3

    def test_destroy_drops_pending_events(self, media, make_session):
        dispatcher = DeferredDispatcher()
        client = HlsClient(HlsConfig(), dispatcher=dispatcher, runner=lambda job: job(),
                           session=make_session({}))
        received = []
        destroying = []
        client.on(HlsEvent.MEDIA_ATTACHED, lambda e, data: received.append(e))
        client.on(HlsEvent.DESTROYING, lambda e, data: destroying.append(e))
        client.attach_media(media)

        client.destroy()
        dispatcher.flush()

        assert received == []
        assert destroying == [HlsEvent.DESTROYING]
        assert client.destroyed is True
        assert client.media is None
        assert media.buffer_closes == 1

    def test_destroy_closes_owned_session_only(self, make_session):
        session = make_session({})
        HlsClient(session=session).destroy()
        session.close.assert_not_called()
