"""
Removal orchestrator tests: routing, state machine and remote fallback.
"""

import asyncio
import math

import httpx
import numpy as np
import pytest

from retouch.engine.mask import StrokeMaskBuilder
from retouch.engine.patchmatch import PatchSimilaritySearch
from retouch.engine.spot import SpotRemover
from retouch.engine.types import BrushMode, Point, Stroke
from retouch.errors import FastPathTimeoutError, InvalidCommitError, SessionBusyError
from retouch.services.inpaint_client import RemoteInpaintClient
from retouch.services.quota_service import InMemoryQuotaStorage, UsageQuotaTracker
from retouch.services.removal_service import (
    CommitStage,
    RemovalOrchestrator,
    Route,
    SessionState,
)
from retouch.utils.image_utils import to_data_url

API_URL = "https://inpaint.test/api/inpaint"


def grey_image(width=64, height=64, value=128):
    image = np.full((height, width, 4), value, dtype=np.uint8)
    image[:, :, 3] = 255
    return image


def noise_image(width=64, height=64, seed=0):
    rng = np.random.default_rng(seed)
    image = rng.integers(0, 256, size=(height, width, 4), dtype=np.uint8)
    image[:, :, 3] = 255
    return image


def loop_points(cx, cy, r, count=40):
    return [
        Point(cx + r * math.cos(2 * math.pi * i / count), cy + r * math.sin(2 * math.pi * i / count))
        for i in range(count)
    ]


class CountingTransport:
    """Mock inpainting server that paints the whole image one colour."""

    def __init__(self, status=200, rgb=(255, 0, 0), remaining=4):
        self.calls = 0
        self.status = status
        self.rgb = rgb
        self.remaining = remaining

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.status != 200:
            return httpx.Response(self.status, json={"error": "rate_limit", "message": "Daily limit reached"})
        width, height = 64, 64
        image = np.zeros((height, width, 4), dtype=np.uint8)
        image[:, :, :3] = self.rgb
        image[:, :, 3] = 255
        return httpx.Response(200, json={"imageUrl": to_data_url(image), "remaining": self.remaining})

    def client(self):
        return RemoteInpaintClient(api_url=API_URL, transport=httpx.MockTransport(self.handler))


def make_orchestrator(networked=False, transport=None, daily_limit=5, **kwargs):
    quota = UsageQuotaTracker(InMemoryQuotaStorage(), daily_limit=daily_limit, today=lambda: "2026-03-01")
    return RemovalOrchestrator(
        quota=quota,
        remote_client=transport.client() if transport else RemoteInpaintClient(api_url=""),
        networked=networked,
        search=PatchSimilaritySearch(iterations=2, seed=0),
        **kwargs,
    )


def draw(orchestrator, points, radius, **kwargs):
    orchestrator.begin_stroke(points[0], radius, **kwargs)
    for p in points[1:]:
        orchestrator.extend_stroke(p)
    return orchestrator.end_stroke()


def test_closed_loop_on_flat_grey_is_unchanged_offline():
    transport = CountingTransport()
    orchestrator = make_orchestrator(networked=False, transport=transport)
    image = grey_image()
    orchestrator.activate(image)
    draw(orchestrator, loop_points(32, 32, 14), radius=4)
    assert orchestrator.state is SessionState.DRAWING

    result = asyncio.run(orchestrator.commit())

    assert transport.calls == 0
    assert result.stage is CommitStage.COMPLETE
    assert result.stages[-1] is CommitStage.COMPLETE
    assert CommitStage.BLENDING in result.stages
    assert [o.route for o in result.outcomes] == [Route.LOCAL]
    np.testing.assert_array_equal(result.image, image)
    assert orchestrator.state is SessionState.IDLE
    assert orchestrator.pending_strokes == []


def test_general_path_changes_stay_inside_stroke_bounds():
    orchestrator = make_orchestrator()
    image = noise_image()
    orchestrator.activate(image)
    stroke = draw(orchestrator, [Point(30, 30), Point(38, 34)], radius=6)

    result = asyncio.run(orchestrator.commit(force_general=True))

    bounds = StrokeMaskBuilder.stroke_bounds(stroke, 64, 64)
    changed_ys, changed_xs = np.nonzero((result.image != image).any(axis=2))
    assert len(changed_xs) > 0
    assert changed_xs.min() >= bounds.x0 and changed_xs.max() < bounds.x1
    assert changed_ys.min() >= bounds.y0 and changed_ys.max() < bounds.y1
    assert result.outcomes[0].route is Route.LOCAL


def test_small_stroke_uses_spot_removal():
    orchestrator = make_orchestrator()
    image = grey_image(value=90)
    image[20:23, 20:23, :3] = 0
    orchestrator.activate(image)
    draw(orchestrator, [Point(21, 21)], radius=3)

    result = asyncio.run(orchestrator.commit())

    assert result.outcomes[0].route is Route.SPOT
    assert result.image[21, 21, 0] > 0


def test_spot_timeout_keeps_strokes_pending():
    orchestrator = make_orchestrator(spot_remover=SpotRemover(timeout_ms=-1))
    orchestrator.activate(grey_image())
    draw(orchestrator, [Point(10, 10)], radius=3)
    draw(orchestrator, [Point(40, 40)], radius=3)

    with pytest.raises(FastPathTimeoutError):
        asyncio.run(orchestrator.commit())
    assert len(orchestrator.pending_strokes) == 2
    assert orchestrator.state is SessionState.DRAWING

    result = asyncio.run(orchestrator.commit(force_general=True))
    assert [o.route for o in result.outcomes] == [Route.LOCAL, Route.LOCAL]
    assert orchestrator.pending_strokes == []


def test_remote_result_blended_inside_mask():
    transport = CountingTransport(rgb=(255, 0, 0), remaining=2)
    orchestrator = make_orchestrator(networked=True, transport=transport)
    image = grey_image()
    orchestrator.activate(image)
    stroke = draw(orchestrator, [Point(32, 32)], radius=12, feather=0.0)

    result = asyncio.run(orchestrator.commit())

    assert transport.calls == 1
    assert result.outcomes[0].route is Route.REMOTE
    assert tuple(result.image[32, 32]) == (255, 0, 0, 255)
    assert tuple(result.image[2, 2]) == (128, 128, 128, 255)
    mask = StrokeMaskBuilder().build(stroke, 64, 64)
    outside = mask.full() == 0
    np.testing.assert_array_equal(result.image[outside], image[outside])
    assert orchestrator.quota.remaining() == 2


def test_rate_limited_remote_falls_back_to_local():
    transport = CountingTransport(status=429)
    orchestrator = make_orchestrator(networked=True, transport=transport)
    orchestrator.activate(grey_image())
    draw(orchestrator, [Point(32, 32)], radius=12)
    draw(orchestrator, [Point(20, 44)], radius=12)

    result = asyncio.run(orchestrator.commit())

    assert transport.calls == 1
    assert [o.route for o in result.outcomes] == [Route.LOCAL, Route.LOCAL]
    assert "AI limit reached, using local processing..." in result.messages
    assert orchestrator.quota.exhausted


def test_no_remote_call_when_quota_used_up():
    transport = CountingTransport()
    orchestrator = make_orchestrator(networked=True, transport=transport, daily_limit=1)
    orchestrator.quota.record_success()
    orchestrator.activate(grey_image())
    draw(orchestrator, [Point(32, 32)], radius=12)

    result = asyncio.run(orchestrator.commit())
    assert transport.calls == 0
    assert result.outcomes[0].route is Route.LOCAL


def test_clone_stroke_never_goes_remote():
    transport = CountingTransport()
    orchestrator = make_orchestrator(networked=True, transport=transport)
    image = noise_image()
    orchestrator.activate(image)
    draw(orchestrator, [Point(16, 16)], radius=4, feather=0.0, mode=BrushMode.CLONE, source_point=Point(40, 16))

    result = asyncio.run(orchestrator.commit())
    assert transport.calls == 0
    assert result.outcomes[0].route is Route.LOCAL
    np.testing.assert_array_equal(result.image[16, 16], image[16, 40])


def test_stroke_outside_image_is_noop():
    orchestrator = make_orchestrator()
    image = grey_image()
    orchestrator.activate(image)
    orchestrator.add_stroke(Stroke(points=[Point(-50, -50)], radius=5))

    result = asyncio.run(orchestrator.commit())
    assert result.outcomes[0].route is Route.NOOP
    np.testing.assert_array_equal(result.image, image)


def test_strokes_queue_while_committing():
    errors = []
    queued = []

    def on_progress(stage, message):
        if stage is CommitStage.PREPARING and not queued:
            assert orchestrator.state is SessionState.COMMITTING
            queued.append(draw(orchestrator, [Point(50, 50)], radius=3))
            for action in (orchestrator.cancel, lambda: orchestrator.activate(grey_image())):
                try:
                    action()
                except SessionBusyError as e:
                    errors.append(e)

    orchestrator = make_orchestrator(on_progress=on_progress)
    orchestrator.activate(grey_image())
    draw(orchestrator, [Point(32, 32)], radius=3)
    result = asyncio.run(orchestrator.commit())

    assert len(errors) == 2
    assert len(result.outcomes) == 1
    assert orchestrator.pending_strokes == queued
    assert orchestrator.state is SessionState.DRAWING


def test_in_flight_stroke_cannot_be_undone():
    errors = []

    def on_progress(stage, message):
        if stage is CommitStage.PREPARING:
            try:
                orchestrator.undo()
            except SessionBusyError as e:
                errors.append(e)

    orchestrator = make_orchestrator(on_progress=on_progress)
    orchestrator.activate(grey_image())
    draw(orchestrator, [Point(32, 32)], radius=3)
    asyncio.run(orchestrator.commit())

    assert len(errors) == 1
    assert orchestrator.state is SessionState.IDLE


def test_undo_drops_last_stroke():
    orchestrator = make_orchestrator()
    orchestrator.activate(grey_image())
    first = draw(orchestrator, [Point(10, 10)], radius=3)
    draw(orchestrator, [Point(20, 20)], radius=3)

    orchestrator.undo()
    assert orchestrator.pending_strokes == [first]
    orchestrator.undo()
    assert orchestrator.pending_strokes == []
    assert orchestrator.state is SessionState.IDLE
    assert orchestrator.undo() is None


def test_cancel_restores_activation_snapshot():
    orchestrator = make_orchestrator()
    image = noise_image()
    orchestrator.activate(image)
    draw(orchestrator, [Point(30, 30)], radius=6)
    committed = asyncio.run(orchestrator.commit(force_general=True))
    assert (committed.image != image).any()

    restored = orchestrator.cancel()
    np.testing.assert_array_equal(restored, image)
    np.testing.assert_array_equal(orchestrator.image, image)


def test_commit_requires_image_and_strokes():
    orchestrator = make_orchestrator()
    with pytest.raises(InvalidCommitError):
        asyncio.run(orchestrator.commit())

    orchestrator.activate(grey_image())
    with pytest.raises(InvalidCommitError):
        asyncio.run(orchestrator.commit())


def test_progress_stages_reported_in_order():
    stages = []
    orchestrator = make_orchestrator(on_progress=lambda stage, message: stages.append(stage))
    orchestrator.activate(noise_image())
    draw(orchestrator, [Point(32, 32)], radius=10)
    asyncio.run(orchestrator.commit())

    assert stages == [
        CommitStage.PREPARING,
        CommitStage.ANALYZING,
        CommitStage.GENERATING,
        CommitStage.BLENDING,
        CommitStage.COMPLETE,
    ]


def test_zero_opacity_content_aware_commit_leaves_image_unchanged():
    orchestrator = make_orchestrator()
    image = noise_image()
    orchestrator.activate(image)
    orchestrator.add_stroke(Stroke(points=[Point(32, 32)], radius=10, feather=0.3, opacity=0.0))

    result = asyncio.run(orchestrator.commit(force_general=True))

    assert result.outcomes[0].route is Route.LOCAL
    assert result.outcomes[0].modified == 0
    np.testing.assert_array_equal(result.image, image)


def test_feathered_edge_keeps_original_colour_mix():
    orchestrator = make_orchestrator()
    image = noise_image()
    orchestrator.activate(image)
    stroke = Stroke(points=[Point(32, 32)], radius=10, feather=0.5, opacity=0.5)
    orchestrator.add_stroke(stroke)

    result = asyncio.run(orchestrator.commit(force_general=True))

    weights = StrokeMaskBuilder().build(stroke, 64, 64).full()
    delta = np.abs(result.image[:, :, :3].astype(int) - image[:, :, :3].astype(int)).max(axis=2)
    # Nothing moves further than weight x opacity of the full 0..255 range allows
    assert np.all(delta <= np.ceil(weights * 0.5 * 255) + 1)
    assert delta[weights == 0].max() == 0


def test_skipped_pixels_untouched_by_blend():
    orchestrator = make_orchestrator()
    image = noise_image(30, 30)
    orchestrator.activate(image)
    orchestrator.add_stroke(Stroke(points=[Point(15, 15)], radius=60))

    result = asyncio.run(orchestrator.commit(force_general=True))

    assert result.outcomes[0].partial
    assert result.partial
    assert CommitStage.BLENDING not in result.stages
    np.testing.assert_array_equal(result.image, image)
