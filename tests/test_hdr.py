import numpy as np
import pytest
from PIL import Image

from frameproc.hdr import (
    GlobalTonemapConfig,
    HdrConfig,
    HdrImage,
    HdrStage,
    LocalTonemapConfig,
    LpFilterConfig,
    TonemapPoint,
)
from frameproc.pwl import Pwl
from frameproc.stage import (
    CameraApp,
    CompletedRequest,
    Stream,
    StreamConfiguration,
    StreamInfo,
    get_post_processing_stages,
)


def yuv_frame(width, height, stride, y, u, v):
    frame = np.zeros(stride * height * 3 // 2, dtype=np.uint8)
    frame[: stride * height].reshape(height, stride)[:, :width] = y
    half = stride // 2
    start = stride * height
    plane = (height // 2) * half
    frame[start : start + plane].reshape(height // 2, half)[:, : width // 2] = u
    frame[start + plane : start + 2 * plane].reshape(height // 2, half)[:, : width // 2] = v
    return frame


def random_frame(width, height, stride, seed=1):
    rng = np.random.default_rng(seed)
    y = rng.integers(0, 256, size=(height, width))
    u = rng.integers(0, 256, size=(height // 2, width // 2))
    v = rng.integers(0, 256, size=(height // 2, width // 2))
    return yuv_frame(width, height, stride, y, u, v), y


def flat_pwl(value, end):
    return Pwl([(0, value), (end, value)])


def test_accumulate_adds_luma_and_centres_chroma():
    frame, y = random_frame(4, 4, 6)
    frame = yuv_frame(4, 4, 6, y, 130, 120)
    img = HdrImage(4, 4, 24)
    img.accumulate(frame, 6)
    assert np.array_equal(img.pixels[:16], y.reshape(-1))
    assert np.all(img.pixels[16:20] == 130 - 128)
    assert np.all(img.pixels[20:24] == 120 - 128)
    assert img.dynamic_range == 256
    img.accumulate(frame, 6)
    assert np.array_equal(img.pixels[:16], 2 * y.reshape(-1))
    assert img.dynamic_range == 512


def test_clear_zeroes_pixels():
    frame, _ = random_frame(4, 4, 4)
    img = HdrImage(4, 4, 24)
    img.accumulate(frame, 4)
    img.clear()
    assert not img.pixels.any()


def test_extract_round_trip_with_padding():
    frame, _ = random_frame(6, 4, 8)
    img = HdrImage(6, 4, 36)
    img.accumulate(frame, 8)
    out = bytearray(len(frame))
    img.extract(out, 8)
    assert np.array_equal(np.frombuffer(bytes(out), dtype=np.uint8), frame)


def test_scale_then_extract_round_trip():
    frame, y = random_frame(4, 4, 4, seed=7)
    img = HdrImage(4, 4, 24)
    img.accumulate(frame, 4)
    img.scale(16.0)
    assert img.dynamic_range == 256 * 16
    assert np.array_equal(img.pixels[:16], 16 * y.reshape(-1))
    out = np.zeros_like(frame)
    img.extract(out, 4)
    assert np.array_equal(out, frame)


def test_extract_requires_dynamic_range():
    img = HdrImage(2, 2, 6)
    with pytest.raises(ValueError):
        img.extract(bytearray(6), 2)


def test_histogram_covers_luma_only():
    frame, _ = random_frame(4, 4, 4)
    img = HdrImage(4, 4, 24)
    img.accumulate(frame, 4)
    hist = img.calculate_histogram()
    assert hist.bins() == img.dynamic_range
    assert hist.total() == 16


def test_create_tonemap_zero_strength_keeps_knots_on_diagonal():
    frame, _ = random_frame(8, 8, 8, seed=3)
    img = HdrImage(8, 8, 96)
    img.accumulate(frame, 8)
    config = GlobalTonemapConfig(
        points=[TonemapPoint(0.5, 0.1, 0.9, 3.0, 0.5), TonemapPoint(0.9, 0.05, 0.95, 3.0, 0.5)],
        strength=0.0,
    )
    tonemap = img.create_tonemap(config)
    points = tonemap.points
    assert (points[0].x, points[0].y) == (0.0, 0.0)
    assert (points[-1].x, points[-1].y) == (255.0, 255.0)
    assert all(p.x == p.y for p in points)


def test_create_tonemap_clamps_target_to_full_range():
    frame = yuv_frame(4, 4, 4, 100, 128, 128)
    img = HdrImage(4, 4, 24)
    img.accumulate(frame, 4)
    config = GlobalTonemapConfig(points=[TonemapPoint(0.5, 0.1, 1.0, 1000.0, 0.0)], strength=1.0)
    tonemap = img.create_tonemap(config)
    assert tonemap.points[1].y == 4095.0


def test_lp_filter_preserves_constant_interior():
    frame = yuv_frame(6, 6, 6, 100, 128, 128)
    img = HdrImage(6, 6, 54)
    img.accumulate(frame, 6)
    lp = img.lp_filter(LpFilterConfig(strength=1.0, threshold=flat_pwl(1, 255)))
    assert lp.dynamic_range == img.dynamic_range
    assert len(lp.pixels) == 36
    interior = lp.pixels.reshape(6, 6)[1:5, 1:5]
    assert np.all(interior == 100)


def test_lp_filter_stays_within_input_range():
    rng = np.random.default_rng(5)
    y = rng.integers(50, 61, size=(6, 6))
    frame = yuv_frame(6, 6, 6, y, 128, 128)
    img = HdrImage(6, 6, 54)
    img.accumulate(frame, 6)
    lp = img.lp_filter(LpFilterConfig(strength=1.0, threshold=flat_pwl(10, 255)))
    out = lp.pixels.reshape(6, 6).astype(int)
    mask = np.ones((6, 6), dtype=bool)
    mask[0, 5] = False
    mask[5, 0] = False
    assert out[mask].min() >= y.min()
    assert out[mask].max() <= y.max()


def identity_config(end):
    return HdrConfig(
        num_frames=1,
        lp_filter=LpFilterConfig(1.0, flat_pwl(1, end)),
        global_tonemap=GlobalTonemapConfig(points=[], strength=0.0),
        local_tonemap=LocalTonemapConfig(flat_pwl(1, end), flat_pwl(1, end), 1.0),
    )


def test_tonemap_identity_leaves_image_unchanged():
    frame, _ = random_frame(4, 4, 4, seed=11)
    img = HdrImage(4, 4, 24)
    img.accumulate(frame, 4)
    original = img.pixels.copy()
    lp = HdrImage(4, 4, 16)
    lp.pixels[:] = img.pixels[:16]
    lp.dynamic_range = img.dynamic_range
    img.tonemap(lp, identity_config(255))
    assert np.array_equal(img.pixels, original)


def test_tonemap_clamps_luma_to_dynamic_range():
    frame, _ = random_frame(4, 4, 4, seed=13)
    img = HdrImage(4, 4, 24)
    img.accumulate(frame, 4)
    lp = HdrImage(4, 4, 16)
    lp.dynamic_range = img.dynamic_range
    config = identity_config(255)
    config.local_tonemap = LocalTonemapConfig(flat_pwl(100, 255), flat_pwl(100, 255), 1.0)
    img.tonemap(lp, config)
    luma = img.pixels[:16]
    assert luma.min() >= 0
    assert luma.max() == img.dynamic_range - 1


@pytest.fixture
def params():
    return {
        "num_frames": 2,
        "lp_filter_strength": 1.0,
        "lp_filter_threshold": [0, 1, 4095, 1],
        "global_tonemap_points": [],
        "global_tonemap_strength": 1.0,
        "local_pos_strength": [0, 1, 4095, 1],
        "local_neg_strength": [0, 1, 4095, 1],
        "local_tonemap_strength": 1.0,
        "local_colour_scale": 1.0,
    }


def make_app(width=8, height=4, stride=8, pixel_format="YUV420"):
    still = Stream("still", StreamConfiguration(pixel_format=pixel_format))
    app = CameraApp(still_stream=still, stream_info={still: StreamInfo(width, height, stride)})
    return app, still


def test_read_parses_parameters(params):
    params = dict(params)
    params["local_pos_strength"] = [0, 2.0, 4095, 0.5]
    params["global_tonemap_points"] = [
        {"q": 0.5, "width": 0.1, "target": 0.3, "max_up": 2.0, "max_down": 0.5}
    ]
    stage = HdrStage(make_app()[0])
    stage.read(params)
    assert stage.config.num_frames == 2
    assert stage.config.global_tonemap.points == [TonemapPoint(0.5, 0.1, 0.3, 2.0, 0.5)]
    pos = [(p.x, p.y) for p in stage.config.local_tonemap.pos_strength.points]
    assert pos == [(0.0, 2.0), (4095.0, 0.5)]
    assert stage.config.jpeg_filename == ""


def test_read_zero_local_strength_gives_unit_gain(params):
    params = dict(params)
    params["local_neg_strength"] = [0, 3.0, 4095, 0.25]
    params["local_tonemap_strength"] = 0.0
    stage = HdrStage(make_app()[0])
    stage.read(params)
    assert [p.y for p in stage.config.local_tonemap.neg_strength.points] == [1.0, 1.0]


def test_read_missing_parameter_raises(params):
    del params["num_frames"]
    with pytest.raises(KeyError):
        HdrStage(make_app()[0]).read(params)


def test_tonemap_point_requires_all_fields():
    with pytest.raises(KeyError):
        TonemapPoint.from_params({"q": 0.5, "width": 0.1})


def test_adjust_config_raises_still_buffer_count():
    stage = HdrStage(make_app()[0])
    still = StreamConfiguration(buffer_count=1)
    stage.adjust_config("still", still)
    assert still.buffer_count == 3
    many = StreamConfiguration(buffer_count=5)
    stage.adjust_config("still", many)
    assert many.buffer_count == 5
    video = StreamConfiguration(buffer_count=1)
    stage.adjust_config("video", video)
    assert video.buffer_count == 1


def test_configure_rejects_other_formats(params):
    app, _ = make_app(pixel_format="RGB888")
    stage = HdrStage(app)
    stage.read(params)
    with pytest.raises(RuntimeError):
        stage.configure()


def test_no_still_stream_passes_frames_through(params):
    stage = HdrStage(CameraApp())
    stage.read(params)
    stage.configure()
    frame = yuv_frame(8, 4, 8, 100, 128, 128)
    buffer = frame.copy()
    assert stage.process(CompletedRequest(buffers={})) is False
    assert np.array_equal(buffer, frame)


def test_constant_frames_survive_hdr_pipeline(params):
    app, still = make_app()
    stage = HdrStage(app)
    stage.read(params)
    stage.configure()
    frame = yuv_frame(8, 4, 8, 100, 128, 128)
    buffers = [frame.copy() for _ in range(3)]
    results = [
        stage.process(CompletedRequest(sequence=i, buffers={still: buf}))
        for i, buf in enumerate(buffers)
    ]
    assert results == [True, False, False]
    assert np.array_equal(buffers[1], frame)
    assert np.array_equal(buffers[2], frame)


def test_jpeg_saved_for_each_frame(params, tmp_path):
    params = dict(params)
    params["num_frames"] = 1
    params["jpeg_filename"] = str(tmp_path / "frame%d.jpg")
    app, still = make_app()
    stage = HdrStage(app)
    stage.read(params)
    stage.configure()
    buffer = yuv_frame(8, 4, 8, 100, 128, 128)
    assert stage.process(CompletedRequest(buffers={still: buffer})) is False
    with Image.open(tmp_path / "frame0.jpg") as saved:
        assert saved.size == (8, 4)


def test_stage_is_registered():
    stages = get_post_processing_stages()
    assert stages["hdr"] is HdrStage
    assert HdrStage(CameraApp()).name() == "hdr"