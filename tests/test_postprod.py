import random

import pytest

from studio_api import postprod


def _frames(*specs):
    return [{"sceneNumber": i + 1, "sceneType": t, "duration": d} for i, (t, d) in enumerate(specs)]


def test_frame_optimizer_keeps_durations_in_band_when_run_twice():
    frames = _frames(("confrontation", 1), ("confessional", 12), ("group-drama", 5), ("walk-off", 8))
    rng = random.Random(7)

    once = postprod.optimize_frames(frames, rng)
    twice = postprod.optimize_frames(once, rng)

    for frame in once + twice:
        assert postprod.MIN_FRAME_SECONDS <= frame["duration"] <= postprod.MAX_FRAME_SECONDS
        assert frame["optimized"] is True


@pytest.mark.parametrize("duration", [0.5, 3, 3.1, 7.9, 8, 30])
def test_clamp_duration_with_extreme_jitter(duration):
    for jitter in (-0.25, 0.0, 0.25):
        value = postprod.clamp_duration(duration, jitter)
        assert 3.0 <= value <= 8.0


def test_frame_without_duration_defaults_to_five_seconds():
    optimized = postprod.optimize_frames([{"sceneType": "entrance"}], random.Random(1))
    assert 4.75 <= optimized[0]["duration"] <= 5.25


def test_transition_mapping_table():
    assert postprod.transition_for("confrontation", "confessional") == {"type": "quick-cut", "duration": 0.1}
    assert postprod.transition_for("confessional", "group-drama") == {"type": "dissolve", "duration": 0.7}
    assert postprod.transition_for("walk-off", "entrance") == {"type": "fade-black", "duration": 1.0}
    assert postprod.transition_for("group-drama", "confrontation") == {"type": "smash-cut", "duration": 0.05}
    # unlisted pairs and the reverse direction fall back to fade
    assert postprod.transition_for("confessional", "confrontation") == {"type": "fade", "duration": 0.5}
    assert postprod.transition_for("unknown", "unknown") == {"type": "fade", "duration": 0.5}


def test_transitions_are_pure():
    frames = _frames(("confrontation", 5), ("confessional", 5), ("group-drama", 5))
    first = postprod.calculate_transitions(frames)
    second = postprod.calculate_transitions(frames)
    assert first == second
    assert [t["type"] for t in first] == ["quick-cut", "dissolve"]
    assert [(t["fromFrame"], t["toFrame"]) for t in first] == [(0, 1), (1, 2)]


def test_frame_optimizer_report():
    frames = _frames(("confrontation", 5), ("confessional", 6))
    report = postprod.run_frame_optimizer(frames, "ultra", random.Random(3))

    assert report["optimizedCount"] == 2
    assert [f["index"] for f in report["frames"]] == [0, 1]
    assert report["qualityAnalysis"]["needsSharpening"] is True
    assert report["qualityAnalysis"]["cinematicMode"] is True
    assert report["qualityAnalysis"]["recommendedBitrate"] == postprod.ENCODER_PRESETS["ultra"]["bitrate"]
    stats = report["stats"]
    assert stats["minDuration"] <= stats["avgDuration"] <= stats["maxDuration"]
    assert stats["totalDuration"] == pytest.approx(sum(f["duration"] for f in report["frames"]))


def test_empty_frames_give_zero_stats():
    report = postprod.run_frame_optimizer([], "premium", random.Random(0))
    assert report["transitions"] == []
    assert report["stats"]["totalDuration"] == 0.0


def test_unknown_color_style_falls_back():
    report = postprod.run_color_grader(_frames(("confessional", 4)), "no-such-style")
    assert report["colorProfile"] == postprod.COLOR_PROFILES["bet-vh1-premium"]
    assert len(report["lutRecommendations"]) == 3
    assert report["colorScience"]["colorSpace"] == "BT.709"
    assert report["ffmpegFilters"].startswith("eq=saturation=")


def test_color_grading_is_per_scene_type():
    report = postprod.run_color_grader(_frames(("confessional", 4), ("mystery", 4)), "netflix-premium")
    grading = report["sceneGrading"]
    assert grading[0]["grading"] == postprod.SCENE_GRADING["confessional"]
    assert grading[1]["grading"] == postprod.DEFAULT_SCENE_GRADING


def test_effects_add_graphics_for_confessionals_and_confrontations():
    report = postprod.run_effects(_frames(("confessional", 4), ("confrontation", 3), ("entrance", 5)))
    kinds = [g["type"] for g in report["motionGraphics"]]
    assert kinds == ["lower-third", "tension-text"]
    assert report["cameraEffects"][2]["effect"]["type"] == "reveal-zoom"
    assert report["ffmpegEffects"] == postprod.FFMPEG_EFFECTS_CHAIN


@pytest.mark.parametrize(
    "quality,bitrate",
    [("premium", "192k"), ("broadcast", "256k"), ("ultra", "320k"), ("unknown", "192k")],
)
def test_audio_mastering_bitrates(quality, bitrate):
    settings = postprod.run_audio_master(quality)["masteringSettings"]
    assert settings["bitrate"] == bitrate
    assert settings["sampleRate"] == 48000
    assert settings["channels"] == 2


def test_audio_sync_points_follow_elapsed_time():
    frames = _frames(("confessional", 4), ("confrontation", 6), ("entrance", 2))
    report = postprod.run_audio_sync(frames, "http://test/a.mp3")
    assert report["totalDuration"] == 12
    assert report["syncPoints"] == [
        {"time": 0.0, "type": "ambient-background", "intensity": "low", "frameIndex": 0},
        {"time": 4.0, "type": "dramatic-music-swell", "intensity": "high", "frameIndex": 1},
    ]
    assert report["recommendations"]["fadeIn"] == 0.5
    assert report["recommendations"]["fadeOut"] == 1.0


def test_quality_enhancer_falls_back_to_premium():
    report = postprod.run_quality_enhancer([], "cinema-9000")
    assert report["bitrate"] == postprod.ENCODER_PRESETS["premium"]["bitrate"]
    assert report["frameAnalysis"]["averageDuration"] == 0.0
    assert report["recommendations"]["useMultipass"] is False

    ultra = postprod.run_quality_enhancer([{"duration_seconds": 6}], "ultra", "3840x2160", 60)
    assert ultra["recommendations"]["useMultipass"] is True
    assert ultra["resolution"] == "3840x2160"
    assert ultra["fps"] == 60
    assert ultra["frameAnalysis"]["averageDuration"] == 6.0
