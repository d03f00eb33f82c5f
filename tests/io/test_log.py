#  Copyright (c) 2021-2025  The University of Texas Southwestern Medical Center.
#  All rights reserved.
#  Redistribution and use in source and binary forms, with or without
#  modification, are permitted for academic and research use only (subject to the
#  limitations in the disclaimer below) provided that the following conditions are met:
#       * Redistributions of source code must retain the above copyright notice,
#       this list of conditions and the following disclaimer.
#       * Redistributions in binary form must reproduce the above copyright
#       notice, this list of conditions and the following disclaimer in the
#       documentation and/or other materials provided with the distribution.
#       * Neither the name of the copyright holders nor the names of its
#       contributors may be used to endorse or promote products derived from this
#       software without specific prior written permission.
#  NO EXPRESS OR IMPLIED LICENSES TO ANY PARTY'S PATENT RIGHTS ARE GRANTED BY
#  THIS LICENSE. THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND
#  CONTRIBUTORS "AS IS" AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT
#  LIMITED TO, THE IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A
#  PARTICULAR PURPOSE ARE DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT HOLDER OR
#  CONTRIBUTORS BE LIABLE FOR ANY DIRECT, INDIRECT, INCIDENTAL, SPECIAL,
#  EXEMPLARY, OR CONSEQUENTIAL DAMAGES (INCLUDING, BUT NOT LIMITED TO,
#  PROCUREMENT OF SUBSTITUTE GOODS OR SERVICES; LOSS OF USE, DATA, OR PROFITS; OR
#  BUSINESS INTERRUPTION) HOWEVER CAUSED AND ON ANY THEORY OF LIABILITY, WHETHER
#  IN CONTRACT, STRICT LIABILITY, OR TORT (INCLUDING NEGLIGENCE OR OTHERWISE)
#  ARISING IN ANY WAY OUT OF THE USE OF THIS SOFTWARE, EVEN IF ADVISED OF THE
#  POSSIBILITY OF SUCH DAMAGE.

# Standard Library Imports
import logging
import os
import warnings

# Third Party Imports
import pytest

# Local Imports
from densematch.io.log import initialize_logging, initiate_logger, run_log_path


@pytest.fixture
def clean_root_logger():
    """Detach the root handlers for the duration of a test."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    for handler in handlers:
        root.removeHandler(handler)
    root.setLevel(logging.NOTSET)
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    logging.captureWarnings(False)


class TestInitializeLogging:
    """Run logging set-up."""

    def test_creates_log_file(self, clean_root_logger, tmp_path):
        """Test that a log file is created in the requested directory."""
        log_directory = tmp_path / "logs"
        root = initialize_logging(str(log_directory), enable_logging=True)
        root.info("hello from the test")
        for handler in root.handlers:
            handler.flush()
        log_files = list(log_directory.glob("*.log"))
        assert len(log_files) == 1
        assert "hello from the test" in log_files[0].read_text()
        assert root.level == logging.INFO

    def test_disabled_logging_adds_null_handler(self, clean_root_logger, tmp_path):
        root = initialize_logging(str(tmp_path), enable_logging=False)
        assert any(isinstance(h, logging.NullHandler) for h in root.handlers)
        assert list(tmp_path.glob("*.log")) == []

    def test_existing_configuration_is_kept(self, clean_root_logger, tmp_path):
        """Test that an application's own logging set-up is left alone."""
        handler = logging.StreamHandler()
        clean_root_logger.addHandler(handler)
        clean_root_logger.setLevel(logging.WARNING)
        root = initialize_logging(str(tmp_path), enable_logging=True)
        assert handler in root.handlers
        assert root.level == logging.WARNING
        assert list(tmp_path.glob("*.log")) == []

    def test_initiate_logger_replaces_handlers(self, clean_root_logger, tmp_path):
        """Test that repeated set-up does not duplicate handlers."""
        initiate_logger(str(tmp_path))
        root = initiate_logger(str(tmp_path))
        assert len(root.handlers) == 2

    def test_debug_level(self, clean_root_logger, tmp_path):
        """Test that the requested threshold reaches both handlers."""
        root = initialize_logging(str(tmp_path), enable_logging=True, level=logging.DEBUG)
        assert root.level == logging.DEBUG
        assert all(handler.level == logging.DEBUG for handler in root.handlers)

    def test_warnings_are_logged(self, clean_root_logger, tmp_path):
        """Test that Python warnings end up in the run log."""
        root = initiate_logger(str(tmp_path))
        with warnings.catch_warnings():
            warnings.simplefilter("always")
            warnings.warn("logm result may be inaccurate")
        for handler in root.handlers:
            handler.flush()
        log_file = next(tmp_path.glob("*.log"))
        assert "logm result may be inaccurate" in log_file.read_text()


class TestRunLogPath:
    """Per-process log file names."""

    def test_name_layout(self, tmp_path, monkeypatch):
        for key in ("SLURM_PROCID", "SLURM_NODEID", "SLURM_ARRAY_TASK_ID", "SLURM_JOB_ID"):
            monkeypatch.delenv(key, raising=False)
        name = os.path.basename(run_log_path(str(tmp_path)))
        assert name.startswith("densematch-")
        assert name.endswith(f"-{os.getpid()}.log")

    def test_slurm_identifier(self, tmp_path, monkeypatch):
        """Test that Slurm task identifiers replace the process id."""
        monkeypatch.setenv("SLURM_PROCID", "17")
        assert run_log_path(str(tmp_path)).endswith("-17.log")
