"""
tests/test_output_sink.py
===========================
Output naming and persistence.
"""

from __future__ import annotations

import re
from datetime import datetime

import pytest

from upscaler.inference.errors import PersistenceError
from upscaler.inference.output_sink import OutputSink, base_name
from upscaler.inference.registry import ModelSelector

FIXED = datetime(2024, 1, 2, 3, 4, 5)


def test_filename_follows_upscaled_timestamp_pattern(tmp_path):
    sink = OutputSink(tmp_path)
    assert re.fullmatch(r"cat_upscaled_\d{8}_\d{6}\.png", sink.filename_for("cat.jpg"))


def test_persist_writes_under_selector_namespace(tmp_path):
    sink = OutputSink(tmp_path, clock=lambda: FIXED)

    artifact = sink.persist(b"png-bytes", "cat.jpg", ModelSelector("esrgan-slim", "x2"))

    assert artifact.filename == "cat_upscaled_20240102_030405.png"
    assert artifact.path == tmp_path / "esrgan-slim-x2" / artifact.filename
    assert artifact.path.read_bytes() == b"png-bytes"


def test_same_second_same_stem_overwrites(tmp_path):
    sink = OutputSink(tmp_path, clock=lambda: FIXED)
    selector = ModelSelector("default")

    first = sink.persist(b"first", "cat.png", selector)
    second = sink.persist(b"second", "cat.jpeg", selector)

    assert first.path == second.path
    assert second.path.read_bytes() == b"second"


@pytest.mark.parametrize(
    "source,expected",
    [
        ("cat.jpg", "cat"),
        ("archive.tar.gz", "archive.tar"),
        ("../../etc/passwd", "passwd"),
        ("C:\\Users\\me\\dog.png", "dog"),
        ("", "image"),
        ("..", "image"),
    ],
)
def test_base_name_strips_directories(source, expected):
    assert base_name(source) == expected


def test_traversal_names_stay_inside_root(tmp_path):
    sink = OutputSink(tmp_path / "out", clock=lambda: FIXED)

    artifact = sink.persist(b"x", "../../evil.png", ModelSelector("default"))

    assert artifact.path.parent == tmp_path / "out" / "default"


def test_unwritable_root_raises_persistence_error(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("occupied")
    sink = OutputSink(blocker)

    with pytest.raises(PersistenceError) as excinfo:
        sink.persist(b"x", "cat.png", ModelSelector("default"))
    assert excinfo.value.kind == "persistence"


def test_nul_byte_in_name_raises_persistence_error(tmp_path):
    sink = OutputSink(tmp_path)

    with pytest.raises(PersistenceError) as excinfo:
        sink.persist(b"x", "bad\x00name.png", ModelSelector("default"))
    assert isinstance(excinfo.value.__cause__, ValueError)
