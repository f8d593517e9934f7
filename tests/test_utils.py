import os
import sys
import pytest
# Include the root of the project
sys.path.append("..")

import utils


def test_filter_text():
    """
    Tests that characters outside the allowed set are dropped.
    """
    assert utils.filter_text("--split 1+s --tlsrec 3") == "--split 1+s --tlsrec 3"
    assert utils.filter_text("--fake\t-1 ~é") == "--fake-1 "
    assert utils.filter_text("https://example.com/a?b=c&d=[1]") == "https://example.com/a?b=c&d=[1]"


def test_clean_lines():
    """
    Tests splitting, stripping and de-duplicating input text.
    """
    text = "  --split 1 \n\n--disorder 1\r\n--split 1\n   \n~~~\n--fake -1"
    assert utils.clean_lines(text) == ["--split 1", "--disorder 1", "--split 1", "--fake -1"]
    assert utils.clean_lines(text, unique=True) == ["--split 1", "--disorder 1", "--fake -1"]
    assert utils.clean_lines("") == []


def test_read_lines(tmp_path):
    path = tmp_path / "strategies.txt"
    path.write_text("--split 1\n--split 1\n--oob 2\n")
    assert utils.read_lines(str(path), unique=True) == ["--split 1", "--oob 2"]


def test_trial_aborted():
    """
    Tests that TrialAbortedException carries its message.
    """
    with pytest.raises(utils.TrialAbortedException) as excinfo:
        raise utils.TrialAbortedException("Port 1 is used by another program.")
    assert excinfo.value.msg == "Port 1 is used by another program."
    assert str(excinfo.value) == "Port 1 is used by another program."
    assert issubclass(utils.ProbeConfigError, ValueError)


def test_get_id():
    ids = {utils.get_id() for _ in range(20)}
    assert len(ids) == 20
    assert all(len(i) == 8 for i in ids)


def test_logger(tmp_path):
    """
    Tests that the logger context manager writes its file and closes its handlers.
    """
    output_dir = str(tmp_path)
    with utils.Logger(output_dir, "test_logger", "lane", "3", log_level="error") as logger:
        logger.info("60%% (60-69): %s", "--split 1")
        assert logger.handlers
    assert not logger.handlers

    path = os.path.join(output_dir, "logs", "3.lane.log")
    with open(path) as fd:
        content = fd.read()
    assert "[LANE 3]" in content
    assert "60% (60-69): --split 1" in content


def test_setup_dirs(tmp_path):
    log_dir = utils.setup_dirs(str(tmp_path / "run"))
    assert os.path.isdir(log_dir)
    assert log_dir.endswith("logs")
