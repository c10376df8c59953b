from pathlib import Path

from timelapse import ffmpeg_io


def _after(cmd, flag):
    return cmd[cmd.index(flag) + 1]


def test_capture_command_software_encode():
    cmd = ffmpeg_io.capture_command(
        video_device="/dev/video0",
        output=Path("/raw/chunk_20240101_000000_000.mp4"),
        duration_sec=3600,
        video_size="1920x1080",
        framerate=30,
        input_format="yuyv422",
        crf=23,
        preset="veryfast",
    )

    assert cmd[0] == "ffmpeg"
    assert _after(cmd, "-f") == "v4l2"
    assert cmd.index("-input_format") < cmd.index("-i")
    assert _after(cmd, "-i") == "/dev/video0"
    assert _after(cmd, "-c:v") == "libx264"
    assert _after(cmd, "-tune") == "stillimage"
    assert _after(cmd, "-g") == "300"
    assert _after(cmd, "-bf") == "0"
    assert _after(cmd, "-t") == "3600"
    assert "-vaapi_device" not in cmd
    assert "1:a" not in cmd
    assert cmd[-1] == "/raw/chunk_20240101_000000_000.mp4"


def test_capture_command_with_audio_and_vaapi():
    cmd = ffmpeg_io.capture_command(
        video_device="/dev/video0",
        output=Path("out.mp4"),
        duration_sec=10,
        video_size="1280x720",
        framerate=15,
        input_format="mjpeg",
        crf=25,
        preset="veryfast",
        audio_device="hw:CARD=Device,DEV=0",
        hwaccel_device="/dev/dri/renderD128",
    )

    assert cmd.index("-vaapi_device") < cmd.index("-i")
    assert _after(cmd, "-vf") == "format=nv12,hwupload"
    assert _after(cmd, "-c:v") == "h264_vaapi"
    assert _after(cmd, "-qp") == "25"
    assert "libx264" not in cmd
    inputs = [cmd[i + 1] for i, token in enumerate(cmd) if token == "-i"]
    assert inputs == ["/dev/video0", "hw:CARD=Device,DEV=0"]
    assert _after(cmd, "-c:a") == "aac"


def test_concat_manifest_quotes_paths(tmp_path):
    first = tmp_path / "chunk_0.mp4"
    odd = tmp_path / "it's here.mp4"

    text = ffmpeg_io.concat_manifest_text([first, odd])

    lines = text.splitlines()
    assert lines[0] == f"file '{first.resolve()}'"
    assert lines[1] == "file '" + str(odd.resolve()).replace("'", "'\\''") + "'"
    assert text.endswith("\n")


def test_concat_command_stream_copies():
    cmd = ffmpeg_io.concat_command(Path("concat.txt"), Path("raw.mp4"))
    assert _after(cmd, "-f") == "concat"
    assert _after(cmd, "-safe") == "0"
    assert _after(cmd, "-c") == "copy"
    assert cmd[-1] == "raw.mp4"


def test_scene_passes():
    scan = ffmpeg_io.scene_scan_command(
        Path("raw.mp4"), sensitivity=0.1, scene_file=Path("/raw/scenes.txt"), output_size="640:360"
    )
    assert _after(scan, "-vf") == (
        "scale=640:360:flags=lanczos,select='gt(scene,0.1000)',"
        "metadata=print:file='/raw/scenes.txt'"
    )
    assert scan[-3:] == ["-f", "null", "-"]

    encode = ffmpeg_io.scene_filter_command(
        Path("raw.mp4"),
        Path("temp.mp4"),
        threshold=0.25,
        output_fps=30,
        output_size="640:360",
        target_seconds=5400,
        crf=23,
        preset="fast",
    )
    assert _after(encode, "-vf") == (
        "scale=640:360:flags=lanczos,select='gt(scene,0.2500)',setpts=N/(30*TB)"
    )
    assert _after(encode, "-fps_mode") == "vfr"
    assert _after(encode, "-t") == "5400"
    assert "-an" in encode
    assert encode[-1] == "temp.mp4"


def test_probe_commands():
    assert ffmpeg_io.packet_count_command(Path("a.mp4"))[-1] == "a.mp4"
    probe = ffmpeg_io.packet_count_command(Path("a.mp4"), limit=8)
    assert "-count_packets" in probe
    assert _after(probe, "-read_intervals") == "%+#8"
    assert probe.index("-read_intervals") < probe.index("a.mp4")
    assert ffmpeg_io.device_format_command("/dev/video0") == [
        "v4l2-ctl",
        "--device=/dev/video0",
        "--get-fmt-video",
    ]
