import numpy as np
import pytest

from frameproc.stage import (
    CameraApp,
    CompletedRequest,
    PostProcessingStage,
    Stream,
    StreamConfiguration,
    StreamInfo,
    execution_time,
    get_post_processing_stages,
    register_stage,
    yuv420_to_rgb,
)


def make_yuv(y_plane, u_plane, v_plane):
    return np.concatenate(
        [np.asarray(p, dtype=np.uint8).ravel() for p in (y_plane, u_plane, v_plane)]
    ).tobytes()


def neutral(y_plane):
    h, stride = y_plane.shape
    chroma = np.full((h // 2, stride // 2), 128, dtype=np.uint8)
    return make_yuv(y_plane, chroma, chroma)


def rgb_grid(data, info):
    arr = np.frombuffer(data, dtype=np.uint8).reshape(info.height, info.stride)
    return arr[:, : 3 * info.width].reshape(info.height, info.width, 3)


class DummyStage(PostProcessingStage):
    def name(self):
        return "dummy"

    def process(self, request):
        request.post_process_metadata["dummy.seen"] = request.sequence
        return False


def test_neutral_chroma_gives_grey_centre_crop():
    y = np.arange(48, dtype=np.uint8).reshape(6, 8)
    src_info = StreamInfo(width=8, height=6, stride=8)
    dst_info = StreamInfo(width=4, height=2, stride=12)
    grid = rgb_grid(yuv420_to_rgb(neutral(y), src_info, dst_info), dst_info)
    expected = y[2:4, 2:6]
    for channel in range(3):
        assert np.array_equal(grid[:, :, channel], expected)


def test_odd_dimensions_cover_straggling_pixels():
    y = (np.arange(24, dtype=np.uint8) * 3).reshape(4, 6)
    src_info = StreamInfo(width=6, height=4, stride=6)
    dst_info = StreamInfo(width=5, height=3, stride=15)
    grid = rgb_grid(yuv420_to_rgb(neutral(y), src_info, dst_info), dst_info)
    assert np.array_equal(grid[:, :, 0], y[:3, :5])
    assert np.array_equal(grid[:, :, 2], y[:3, :5])


def test_chroma_shared_across_two_by_two_blocks():
    y = np.full((2, 8), 128, dtype=np.uint8)
    u = np.array([[100, 110, 120, 130]], dtype=np.uint8)
    v = np.full((1, 4), 128, dtype=np.uint8)
    info = StreamInfo(width=8, height=2, stride=8)
    dst = StreamInfo(width=8, height=2, stride=24)
    grid = rgb_grid(yuv420_to_rgb(make_yuv(y, u, v), info, dst), dst)
    blue = grid[:, :, 2]
    assert blue[0, 0] == blue[0, 1] == blue[1, 0] == blue[1, 1]
    assert blue[0, 0] < blue[0, 2] < blue[0, 4] < blue[0, 6]
    assert np.array_equal(blue[0], blue[1])


def test_values_are_clamped():
    info = StreamInfo(width=2, height=2, stride=2)
    bright = make_yuv(np.full((2, 2), 255), [[128]], [[255]])
    dark = make_yuv(np.zeros((2, 2)), [[0]], [[128]])
    assert rgb_grid(yuv420_to_rgb(bright, info, info_rgb := StreamInfo(2, 2, 6)), info_rgb)[0, 0, 0] == 255
    assert rgb_grid(yuv420_to_rgb(dark, info, info_rgb), info_rgb)[0, 0, 2] == 0


def test_output_size_and_padding():
    y = np.full((4, 4), 200, dtype=np.uint8)
    src_info = StreamInfo(width=4, height=4, stride=4)
    dst_info = StreamInfo(width=2, height=2, stride=10)
    out = yuv420_to_rgb(neutral(y), src_info, dst_info)
    assert len(out) == dst_info.height * dst_info.stride
    rows = np.frombuffer(out, dtype=np.uint8).reshape(2, 10)
    assert not rows[:, 6:].any()


def test_destination_larger_than_source_rejected():
    y = np.zeros((2, 2), dtype=np.uint8)
    with pytest.raises(ValueError):
        yuv420_to_rgb(neutral(y), StreamInfo(2, 2, 2), StreamInfo(4, 2, 12))


def test_destination_stride_too_small_rejected():
    y = np.zeros((2, 2), dtype=np.uint8)
    with pytest.raises(ValueError):
        yuv420_to_rgb(neutral(y), StreamInfo(2, 2, 2), StreamInfo(2, 2, 5))


def test_stage_is_abstract():
    with pytest.raises(TypeError):
        PostProcessingStage(CameraApp())


def test_stage_defaults_leave_config_alone():
    stage = DummyStage(CameraApp())
    config = StreamConfiguration(buffer_count=1)
    stage.adjust_config("still", config)
    assert config.buffer_count == 1
    request = CompletedRequest(sequence=7)
    assert stage.process(request) is False
    assert request.post_process_metadata["dummy.seen"] == 7


def test_get_stream_info():
    main = Stream("main")
    info = StreamInfo(width=4, height=2, stride=4)
    app = CameraApp(main_stream=main, stream_info={main: info})
    assert app.get_stream_info(main) is info
    with pytest.raises(KeyError):
        app.get_stream_info(Stream("other"))


def test_execution_time_calls_function():
    calls = []
    elapsed = execution_time(calls.append, "value")
    assert calls == ["value"]
    assert elapsed >= 0


def test_registry():
    register_stage("registry_test_dummy", DummyStage)
    stages = get_post_processing_stages()
    assert "registry_test_dummy" in stages
    stage = stages["registry_test_dummy"](CameraApp())
    assert stage.name() == "dummy"
    with pytest.raises(TypeError):
        stages["another"] = DummyStage