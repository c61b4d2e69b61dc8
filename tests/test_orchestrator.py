"""Tests for the caller-side Upscaler orchestrator."""

import threading

import pytest

from conftest import TEST_MODELS, FakeFetcher, make_image
from restorescale.exceptions import ProtocolMisuseError
from restorescale.messages import (
    CompleteEvent,
    ErrorEvent,
    InitializeEvent,
    PipelineCallbacks,
    StatusEvent,
    TileEvent,
)
from restorescale.orchestrator import PipelineState, Upscaler
from restorescale.tiler import TileAssembler


@pytest.fixture
def make_upscaler(cache, fetcher, session_factory):
    created = []

    def _factory(**overrides):
        kwargs = dict(cache=cache, fetcher=fetcher, session_factory=session_factory)
        kwargs.update(overrides)
        upscaler = Upscaler(**kwargs)
        created.append(upscaler)
        return upscaler

    yield _factory
    for upscaler in created:
        upscaler.terminate()


def test_initialize_reports_progress_and_becomes_ready(make_upscaler):
    statuses = []
    upscaler = make_upscaler(callbacks=PipelineCallbacks(on_status=statuses.append))

    assert upscaler.state == PipelineState.IDLE
    assert upscaler.initialize(TEST_MODELS) is True

    assert upscaler.state == PipelineState.READY
    assert upscaler.models_ready
    assert statuses == [
        "Checking model cache...",
        "Downloading Real-ESRGAN...",
        "Real-ESRGAN downloaded and cached.",
        "Downloading GFPGAN...",
        "GFPGAN downloaded and cached.",
        "All models loaded. Ready to upscale.",
    ]


def test_cold_cache_fetches_each_model_once(make_upscaler, cache, fetcher):
    upscaler = make_upscaler()

    assert upscaler.initialize(TEST_MODELS)
    assert upscaler.initialize(TEST_MODELS)

    assert fetcher.calls == ["esrgan-v1", "gfpgan-v1.4"]
    assert cache.puts == ["esrgan-v1", "gfpgan-v1.4"]


def test_warm_cache_survives_new_instances(make_upscaler, cache):
    make_upscaler().initialize(TEST_MODELS)

    second_fetcher = FakeFetcher()
    statuses = []
    upscaler = make_upscaler(
        fetcher=second_fetcher, callbacks=PipelineCallbacks(on_status=statuses.append)
    )

    assert upscaler.initialize(TEST_MODELS)
    assert second_fetcher.calls == []
    assert "Real-ESRGAN model loaded from cache." in statuses


def test_fetch_failure_aborts_load_but_keeps_other_model_cached(make_upscaler, cache):
    errors = []
    failing = FakeFetcher(failing={"gfpgan-v1.4"})
    upscaler = make_upscaler(fetcher=failing, callbacks=PipelineCallbacks(on_error=errors.append))

    assert upscaler.initialize(TEST_MODELS) is False

    assert len(errors) == 1 and "GFPGAN" in errors[0]
    assert upscaler.state == PipelineState.IDLE
    assert not upscaler.models_ready
    assert cache.get("esrgan-v1") == b"esrgan-weights"
    assert cache.get("gfpgan-v1.4") is None

    retry = FakeFetcher()
    upscaler.fetcher = retry
    assert upscaler.initialize(TEST_MODELS)
    assert retry.calls == ["gfpgan-v1.4"]


def test_unexpected_loading_error_returns_to_idle_and_can_retry(make_upscaler):
    class ExhaustedFetcher(FakeFetcher):
        def fetch(self, descriptor, progress=None):
            self.calls.append(descriptor.key)
            raise MemoryError("cannot buffer weights")

    errors = []
    upscaler = make_upscaler(
        fetcher=ExhaustedFetcher(), callbacks=PipelineCallbacks(on_error=errors.append)
    )

    assert upscaler.initialize(TEST_MODELS) is False
    assert upscaler.state == PipelineState.IDLE
    assert not upscaler.models_ready
    assert errors == ["cannot buffer weights"]
    assert upscaler.last_error == "cannot buffer weights"

    upscaler.fetcher = FakeFetcher()
    assert upscaler.initialize(TEST_MODELS) is True
    assert upscaler.state == PipelineState.READY


def test_upscale_before_models_load_is_an_error(make_upscaler):
    errors = []
    upscaler = make_upscaler(callbacks=PipelineCallbacks(on_error=errors.append))
    image = make_image(16, 16)

    events = upscaler.upscale(image, "cpu").collect(timeout=5)

    assert len(events) == 1 and isinstance(events[0], ErrorEvent)
    assert "Models not loaded yet" in events[0].detail
    assert errors == [events[0].detail]
    assert not image.detached
    assert upscaler.state == PipelineState.IDLE


def test_super_resolution_request_reports_exact_geometry(make_upscaler):
    upscaler = make_upscaler()
    upscaler.initialize(TEST_MODELS)

    events = upscaler.upscale(make_image(300, 300), "cpu", use_super_res=True).collect(timeout=30)

    init = [e for e in events if isinstance(e, InitializeEvent)]
    tiles = [e for e in events if isinstance(e, TileEvent)]
    assert [(e.width, e.height) for e in init] == [(1200, 1200)]
    assert [(t.x, t.y) for t in tiles] == [(0, 0), (1024, 0), (0, 1024), (1024, 1024)]
    assert isinstance(events[-1], CompleteEvent)
    assert upscaler.state == PipelineState.IDLE


def test_streamed_tiles_reassemble_into_full_output(make_upscaler):
    upscaler = make_upscaler()
    upscaler.initialize(TEST_MODELS)
    image = make_image(300, 20)
    source = image.as_array().copy()

    assembler = TileAssembler()
    for event in upscaler.upscale(image, "cpu"):
        if isinstance(event, InitializeEvent):
            assembler.initialize(event.width, event.height)
        elif isinstance(event, TileEvent):
            assembler.add_tile(event.tile, event.x, event.y)

    result = assembler.result.as_array()
    assert result.shape == (80, 1200, 4)
    assert (result[::4, ::4, :3] == source[:, :, :3]).all()


def test_models_move_to_worker_only_once(make_upscaler, session_factory):
    upscaler = make_upscaler()
    upscaler.initialize(TEST_MODELS)
    sent = []
    original_post = upscaler.context.post

    def recording_post(message):
        sent.append(message.model_blobs)
        original_post(message)

    upscaler.context.post = recording_post

    upscaler.upscale(make_image(8, 8), "cpu").wait(timeout=10)
    upscaler.upscale(make_image(8, 8), "cpu").wait(timeout=10)

    assert sent[0] is not None and set(sent[0]) == {"esrgan-v1", "gfpgan-v1.4"}
    assert sent[1] is None
    assert upscaler.models_sent


def test_image_ownership_moves_with_the_request(make_upscaler):
    upscaler = make_upscaler()
    upscaler.initialize(TEST_MODELS)
    image = make_image(8, 8)

    stream = upscaler.upscale(image, "cpu")
    stream.wait(timeout=10)

    assert image.detached
    with pytest.raises(ProtocolMisuseError):
        image.as_array()

    reused = upscaler.upscale(image, "cpu").collect(timeout=5)
    assert isinstance(reused[0], ErrorEvent)
    assert "already been transferred" in reused[0].detail


def test_backend_switch_recompiles_both_models(make_upscaler, session_factory):
    upscaler = make_upscaler()
    upscaler.initialize(TEST_MODELS)

    def run(backend):
        before = len(session_factory.compiled)
        events = upscaler.upscale(
            make_image(32, 32), backend, use_face_restore=True, use_super_res=True
        ).collect(timeout=30)
        assert isinstance(events[-1], CompleteEvent)
        return sorted(session_factory.compiled[before:])

    assert run("cpu") == [(b"esrgan-weights", "cpu"), (b"gfpgan-weights", "cpu")]
    assert run("cpu") == []
    assert run("cuda") == [(b"esrgan-weights", "cuda"), (b"gfpgan-weights", "cuda")]
    assert run("cpu") == [(b"esrgan-weights", "cpu"), (b"gfpgan-weights", "cpu")]


def test_second_request_while_running_is_rejected(make_upscaler, session_factory, gate):
    session_factory.engine_kwargs[b"esrgan-weights"] = {"gate": gate}
    upscaler = make_upscaler()
    upscaler.initialize(TEST_MODELS)

    first = upscaler.upscale(make_image(16, 16), "cpu")
    assert upscaler.busy

    second = upscaler.upscale(make_image(16, 16), "cpu").collect(timeout=5)
    assert isinstance(second[0], ErrorEvent)
    assert "already running" in second[0].detail

    gate.set()
    assert isinstance(first.wait(timeout=10), CompleteEvent)
    assert not upscaler.busy


def test_backend_failure_surfaces_as_error_and_recovers(make_upscaler, session_factory):
    upscaler = make_upscaler()
    upscaler.initialize(TEST_MODELS)
    session_factory.fail_backends.add("directml")

    failed = upscaler.upscale(make_image(8, 8), "directml").collect(timeout=10)
    assert isinstance(failed[-1], ErrorEvent)
    assert "DIRECTML" in failed[-1].detail
    assert upscaler.last_error == failed[-1].detail
    assert upscaler.state == PipelineState.IDLE

    recovered = upscaler.upscale(make_image(8, 8), "cpu").collect(timeout=10)
    assert isinstance(recovered[-1], CompleteEvent)


def test_missing_stage_model_is_rejected(make_upscaler):
    upscaler = make_upscaler()
    upscaler.initialize(TEST_MODELS[:1])

    events = upscaler.upscale(make_image(8, 8), "cpu", use_face_restore=True).collect(timeout=5)

    assert isinstance(events[0], ErrorEvent)
    assert "face restoration" in events[0].detail


def test_callbacks_receive_request_events(make_upscaler):
    seen = {"tiles": 0}
    done = threading.Event()

    def on_tile(tile, x, y):
        seen["tiles"] += 1

    def on_complete(elapsed):
        seen["elapsed"] = elapsed
        done.set()

    upscaler = make_upscaler(
        callbacks=PipelineCallbacks(
            on_initialize=lambda w, h: seen.setdefault("init", (w, h)),
            on_tile=on_tile,
            on_complete=on_complete,
        )
    )
    upscaler.initialize(TEST_MODELS)
    upscaler.upscale(make_image(20, 10), "cpu")

    assert done.wait(10)
    assert seen["init"] == (80, 40)
    assert seen["tiles"] == 1
    assert seen["elapsed"] >= 0


def test_terminate_rejects_further_work(make_upscaler):
    upscaler = make_upscaler()
    upscaler.initialize(TEST_MODELS)

    upscaler.terminate()

    events = upscaler.upscale(make_image(8, 8), "cpu").collect(timeout=5)
    assert isinstance(events[0], ErrorEvent)
    assert "terminated" in events[0].detail
    assert upscaler.initialize(TEST_MODELS) is False


def test_background_loading_guards_early_requests(make_upscaler, fetcher):
    release = threading.Event()
    original_fetch = fetcher.fetch

    def slow_fetch(descriptor, progress=None):
        release.wait(5)
        return original_fetch(descriptor, progress)

    fetcher.fetch = slow_fetch
    upscaler = make_upscaler()
    loader = upscaler.start_loading(TEST_MODELS)

    early = upscaler.upscale(make_image(8, 8), "cpu").collect(timeout=5)
    assert isinstance(early[0], ErrorEvent)

    release.set()
    loader.join(5)
    assert upscaler.state == PipelineState.READY
    assert isinstance(upscaler.upscale(make_image(8, 8), "cpu").wait(timeout=10), CompleteEvent)


def test_status_events_precede_terminal_event(make_upscaler):
    upscaler = make_upscaler()
    upscaler.initialize(TEST_MODELS)

    events = upscaler.upscale(make_image(8, 8), "cpu").collect(timeout=10)

    assert all(isinstance(e, (StatusEvent, InitializeEvent, TileEvent)) for e in events[:-1])
    assert sum(1 for e in events if e.terminal) == 1
