import numpy as np
import pytest

from clipgrade.core.errors import GeometryMismatchError
from clipgrade.core.transform import apply_transform, build_transform, identity_transform

from fakes import brighten, ramp, solid


def on_node_image(seed: int = 0) -> np.ndarray:
    # levels=18 puts grid nodes on multiples of 15
    rng = np.random.default_rng(seed)
    return (rng.integers(0, 16, size=(24, 24, 3)) * 15).astype(np.uint8)


def test_identity_is_idempotent():
    frame = ramp(seed=4)
    transform = build_transform(frame, frame)
    assert transform.is_identity
    out = apply_transform(transform, frame)
    assert np.array_equal(out, frame)
    assert out is not frame


def test_identity_transform_leaves_any_frame_unchanged():
    frame = ramp(seed=9)
    assert np.array_equal(apply_transform(identity_transform(), frame), frame)


def test_uniform_shift_is_reproduced_on_grid_nodes():
    before = on_node_image()
    after = brighten(before, 10)
    transform = build_transform(before, after, levels=18)
    assert np.array_equal(apply_transform(transform, before), after)


def test_solid_color_edit_propagates_exactly():
    before = solid((40, 80, 120))
    after = brighten(before, 20)
    transform = build_transform(before, after)
    assert np.array_equal(apply_transform(transform, solid((40, 80, 120), 8, 12)), brighten(solid((40, 80, 120), 8, 12), 20))


def test_identical_colors_map_identically_across_frames():
    rng = np.random.default_rng(7)
    before = ramp(seed=2)
    after = np.clip(before.astype(np.int16) * 1.1 + 5, 0, 255).astype(np.uint8)
    transform = build_transform(before, after)

    frame_a = rng.integers(0, 256, size=(20, 20, 3), dtype=np.uint8)
    frame_b = rng.integers(0, 256, size=(30, 10, 3), dtype=np.uint8)
    frame_b[3, 4] = frame_a[5, 6]
    out_a = apply_transform(transform, frame_a)
    out_b = apply_transform(transform, frame_b)
    assert np.array_equal(out_a[5, 6], out_b[3, 4])


def test_unobserved_colors_pass_through():
    before = solid((10, 10, 10))
    after = solid((60, 60, 60))
    transform = build_transform(before, after)
    white = solid((255, 255, 255))
    assert np.array_equal(apply_transform(transform, white), white)
    assert transform.observed_nodes == 8


def test_sample_step_subsamples_pixels():
    before = ramp(seed=5)
    transform = build_transform(before, brighten(before, 5), sample_step=2)
    assert 0 < transform.observed_nodes <= before[::2, ::2].reshape(-1, 3).shape[0]


def test_geometry_mismatch_raises():
    with pytest.raises(GeometryMismatchError) as excinfo:
        build_transform(ramp(32, 48), ramp(48, 32))
    assert excinfo.value.before_shape == (32, 48, 3)


def test_output_is_clipped_uint8():
    before = solid((250, 250, 250))
    transform = build_transform(before, brighten(before, 5))
    out = apply_transform(transform, solid((254, 254, 254)))
    assert out.dtype == np.uint8
    assert out.max() == 255


def test_identity_cube_export(tmp_path):
    text = identity_transform(levels=2).to_cube(title="test")
    lines = text.strip().splitlines()
    assert lines[0] == 'TITLE "test"'
    assert lines[1] == "LUT_3D_SIZE 2"
    body = [line for line in lines[2:] if line]
    assert len(body) == 8
    assert body[0] == "0.000000 0.000000 0.000000"
    assert body[1] == "1.000000 0.000000 0.000000"
    assert body[-1] == "1.000000 1.000000 1.000000"

    path = identity_transform(levels=2).write_cube(tmp_path / "luts" / "id.cube")
    assert path.read_text(encoding="utf-8") == identity_transform(levels=2).to_cube()


def test_grade_fades_smoothly_past_observed_colors():
    transform = build_transform(solid((8, 8, 8)), solid((68, 68, 68)), levels=32)

    out = apply_transform(transform, np.array([[[16, 16, 16], [17, 17, 17]]], dtype=np.uint8))
    assert abs(int(out[0, 0, 0]) - int(out[0, 1, 0])) <= 5

    line = np.full((1, 256, 3), 8, dtype=np.uint8)
    line[0, :, 2] = np.arange(256)
    graded = apply_transform(transform, line)[0, :, 2].astype(np.int16)
    assert graded[0] == 68
    assert graded[255] == 255
    assert np.abs(np.diff(graded)).max() <= 9


def test_mask_keeps_excluded_pixels_out_of_the_table():
    before = solid((100, 100, 100), 20, 20)
    after = brighten(before, 10)
    after[:5, :5] = (255, 0, 255)
    mask = np.ones(before.shape[:2], dtype=bool)
    mask[:5, :5] = False

    transform = build_transform(before, after, mask=mask)
    assert np.array_equal(apply_transform(transform, solid((100, 100, 100))), solid((110, 110, 110)))

    polluted = build_transform(before, after)
    assert not np.array_equal(apply_transform(polluted, solid((100, 100, 100))), solid((110, 110, 110)))


def test_mask_shape_must_match():
    with pytest.raises(ValueError):
        build_transform(ramp(), ramp(), mask=np.ones((3, 3), dtype=bool))
