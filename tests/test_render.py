import pytest

from quote_reel.queue import RenderError
from quote_reel.render import compute_output_key, dry_run, load_render_callable


def test_load_render_callable():
    assert load_render_callable("quote_reel.render:dry_run") is dry_run


@pytest.mark.parametrize("target", ["quote_reel.render", ":dry_run", "quote_reel.render:"])
def test_load_render_callable_malformed(target):
    with pytest.raises(ValueError):
        load_render_callable(target)


def test_load_render_callable_missing_attribute():
    with pytest.raises(ValueError, match="no attribute"):
        load_render_callable("quote_reel.render:nope")


def test_load_render_callable_not_callable():
    with pytest.raises(ValueError, match="not callable"):
        load_render_callable("quote_reel.render:json")
    # module attribute that is a plain value
    with pytest.raises(ValueError):
        load_render_callable("quote_reel:__version__")


def test_compute_output_key_deterministic():
    """Key order does not change the output key."""
    a = compute_output_key({"text": "hi", "quality": "720p"})
    b = compute_output_key({"quality": "720p", "text": "hi"})
    assert a == b
    assert a.startswith("reels/") and a.endswith(".mp4")
    assert a != compute_output_key({"text": "hi", "quality": "4k"})


def test_dry_run_reports_progress():
    seen = []
    result = dry_run({"text": "hi"}, seen.append)

    assert seen == [10, 40, 90, 100]
    assert result["text"] == "hi"
    assert result["quality"] == "1080p"
    assert result["output_key"] == compute_output_key({"text": "hi"})


def test_dry_run_simulated_failure():
    seen = []
    with pytest.raises(RenderError, match="font missing"):
        dry_run({"text": "hi", "simulate_failure": "font missing"}, seen.append)
    assert seen == [10]
