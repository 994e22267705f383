"""
Region fill tests: clone, heal, content-aware and source selection.
"""

import numpy as np
import pytest

from retouch.engine.fill import RegionFillEngine, luminance
from retouch.engine.mask import StrokeMaskBuilder
from retouch.engine.patchmatch import PatchSimilaritySearch
from retouch.engine.types import BrushMode, Point, Stroke


def noise_image(width, height, seed=0):
    rng = np.random.default_rng(seed)
    image = rng.integers(0, 256, size=(height, width, 4), dtype=np.uint8)
    image[:, :, 3] = 255
    return image


def build(stroke, width, height):
    return StrokeMaskBuilder().build(stroke, width, height)


def test_luminance_weights():
    rgb = np.array([[255, 255, 255], [0, 0, 0], [255, 0, 0]], dtype=np.uint8)
    np.testing.assert_allclose(luminance(rgb), [255.0, 0.0, 0.299 * 255])


def test_clone_copies_source_exactly():
    image = noise_image(64, 64)
    mask = build(Stroke(points=[Point(15, 15)], radius=4, feather=0.0), 64, 64)
    result = RegionFillEngine().clone(image, mask, (20, 0))

    ys, xs = np.nonzero(mask.full() > 0)
    np.testing.assert_array_equal(result.image[ys, xs], image[ys, xs + 20])
    assert result.modified == mask.area
    assert not result.partial

    untouched = mask.full() == 0
    np.testing.assert_array_equal(result.image[untouched], image[untouched])


def test_clone_respects_opacity():
    image = np.zeros((32, 32, 4), dtype=np.uint8)
    image[:, 16:] = 200
    mask = build(Stroke(points=[Point(6, 16)], radius=3, feather=0.0), 32, 32)
    result = RegionFillEngine().clone(image, mask, (16, 0), opacity=0.5)
    ys, xs = np.nonzero(mask.full() > 0)
    assert np.all(result.image[ys, xs, :3] == 100)


def test_source_out_of_bounds_is_partial():
    image = noise_image(40, 40)
    mask = build(Stroke(points=[Point(5, 20)], radius=4, feather=0.0), 40, 40)
    result = RegionFillEngine().clone(image, mask, (-6, 0))

    assert result.partial
    assert result.skipped > 0
    assert result.modified + result.skipped == mask.area
    # Skipped pixels are untouched
    ys, xs = np.nonzero(mask.full() > 0)
    skipped = xs - 6 < 0
    np.testing.assert_array_equal(result.image[ys[skipped], xs[skipped]], image[ys[skipped], xs[skipped]])


def test_heal_on_uniform_image_is_identity():
    image = np.full((48, 48, 4), 128, dtype=np.uint8)
    image[:, :, 3] = 255
    mask = build(Stroke(points=[Point(24, 24)], radius=6, feather=0.5), 48, 48)
    result = RegionFillEngine().heal(image, mask, (12, 0))
    np.testing.assert_array_equal(result.image, image)


def test_heal_shifts_source_toward_surrounding_colour():
    image = np.full((64, 64, 4), 100, dtype=np.uint8)
    image[:, 40:, :3] = 160  # brighter source region
    image[:, :, 3] = 255
    mask = build(Stroke(points=[Point(15, 32)], radius=6, feather=0.6), 64, 64)
    healed = RegionFillEngine().heal(image, mask, (35, 0)).image
    cloned = RegionFillEngine().clone(image, mask, (35, 0)).image

    full = mask.full()
    edge = (full > 0) & (full < 0.5)
    # Colour correction pulls the soft edge back toward the surroundings
    assert healed[edge][:, 0].mean() < cloned[edge][:, 0].mean()


def test_explicit_source_point_uses_mask_centroid():
    image = noise_image(64, 64, seed=2)
    stroke = Stroke(
        points=[Point(10, 10)],
        radius=3,
        feather=0.0,
        mode=BrushMode.CLONE,
        source_point=Point(40, 30),
    )
    mask = build(stroke, 64, 64)
    engine = RegionFillEngine()
    assert engine.resolve_source_offset(image, mask, stroke) == (30, 20)

    result = engine.apply(image, mask, stroke)
    ys, xs = np.nonzero(mask.full() > 0)
    np.testing.assert_array_equal(result.image[ys, xs], image[ys + 20, xs + 30])


def test_auto_source_prefers_matching_luminance():
    image = np.full((100, 100, 4), 80, dtype=np.uint8)
    image[:, 50:, :3] = 255
    image[:, :, 3] = 255
    image[45:56, 20:31, :3] = 0  # dark object on the grey side
    stroke = Stroke(points=[Point(25, 50)], radius=5, feather=0.0, mode=BrushMode.CLONE)
    mask = build(stroke, 100, 100)

    engine = RegionFillEngine()
    offset = engine.auto_source_offset(image, mask, stroke.radius)
    assert offset is not None
    assert not mask.bounds.shifted(*offset).intersects(mask.bounds)

    result = engine.apply(image, mask, stroke)
    ys, xs = np.nonzero(mask.full() > 0)
    values = set(np.unique(result.image[ys, xs, 0]).tolist())
    assert 80 in values
    assert values <= {0, 80}


def test_auto_source_none_when_nothing_fits():
    image = noise_image(12, 12)
    stroke = Stroke(points=[Point(6, 6)], radius=20, feather=0.0, mode=BrushMode.HEAL)
    mask = build(stroke, 12, 12)
    engine = RegionFillEngine(auto_source_rings=1)
    assert engine.auto_source_offset(image, mask, stroke.radius) is None

    result = engine.apply(image, mask, stroke)
    assert result.modified == 0
    assert result.skipped == mask.area
    np.testing.assert_array_equal(result.image, image)


def test_content_aware_uses_nnf_offsets():
    image = np.full((40, 40, 4), 90, dtype=np.uint8)
    image[:, :, 3] = 255
    image[18:23, 18:23, :3] = 250
    stroke = Stroke(points=[Point(20, 20)], radius=5, feather=0.2)
    mask = build(stroke, 40, 40)
    nnf = PatchSimilaritySearch(iterations=2, seed=0).search(image, mask)

    result = RegionFillEngine().apply(image, mask, stroke, nnf=nnf)
    assert result.modified == mask.area
    np.testing.assert_array_equal(result.image[20, 20], [90, 90, 90, 255])


def test_content_aware_requires_nnf():
    image = noise_image(16, 16)
    stroke = Stroke(points=[Point(8, 8)], radius=2)
    with pytest.raises(ValueError):
        RegionFillEngine().apply(image, build(stroke, 16, 16), stroke)


def test_fill_alpha_records_weight_times_opacity():
    image = noise_image(40, 40)
    mask = build(Stroke(points=[Point(5, 20)], radius=4, feather=0.5), 40, 40)
    result = RegionFillEngine().clone(image, mask, (-6, 0), opacity=0.5)

    assert result.alpha.shape == mask.weights.shape
    ly, lx = np.nonzero(mask.weights > 0)
    skipped = lx + mask.bounds.x0 - 6 < 0
    assert np.all(result.alpha[ly[skipped], lx[skipped]] == 0)
    np.testing.assert_allclose(
        result.alpha[ly[~skipped], lx[~skipped]], mask.weights[ly[~skipped], lx[~skipped]] * 0.5
    )
    assert np.all(result.alpha[mask.weights == 0] == 0)


def test_heal_correction_uses_weighted_source_mean():
    image = np.full((64, 64, 4), 200, dtype=np.uint8)
    image[:, :, 3] = 255
    image[:, 32:, :3] = 0
    mask = build(Stroke(points=[Point(16, 32)], radius=8, feather=0.8), 64, 64)
    ly, lx = np.nonzero(mask.weights > 0)
    ys, xs = ly + mask.bounds.y0, lx + mask.bounds.x0
    weights = mask.weights[ly, lx].astype(np.float64)
    # Source: mid-grey core, black feathered rim
    core = weights > 0.5
    image[ys[core], xs[core] + 32, :3] = 100

    engine = RegionFillEngine()
    result = engine.heal(image, mask, (32, 0))

    src = image[ys, xs + 32, 0].astype(np.float64)
    correction = 200.0 - np.average(src, weights=weights)
    i = int(np.argmin(np.abs(weights - 0.3)))
    w = weights[i]
    healed = np.clip(src[i] + correction * np.clip(1.0 - engine.correction_falloff * w, 0.0, 1.0), 0, 255)
    expected = 200 * (1.0 - w) + healed * w
    assert abs(int(result.image[ys[i], xs[i], 0]) - expected) <= 1


def test_zero_auto_source_rings_is_respected():
    image = noise_image(64, 64)
    stroke = Stroke(points=[Point(32, 32)], radius=4, feather=0.0, mode=BrushMode.HEAL)
    mask = build(stroke, 64, 64)
    engine = RegionFillEngine(auto_source_rings=0, correction_falloff=0.0)
    assert engine.auto_source_rings == 0
    assert engine.correction_falloff == 0.0
    assert engine.auto_source_offset(image, mask, stroke.radius) is None
