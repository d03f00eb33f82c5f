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

"""Run logging for registrations started outside an application."""

# Standard Library Imports
import logging
import os
import socket
import sys
from datetime import datetime
from typing import Union

# Local Imports

# Third Party Imports

#: Prefix of every run log file name.
LOG_PREFIX = "densematch"

#: Record layout shared by the file and console handlers.
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def initialize_logging(
    log_directory: str, enable_logging: bool, level: Union[int, str] = logging.INFO
) -> logging.Logger:
    """Configure run logging unless the application already did.

    An embedding application that configured the root logger keeps control.

    Parameters
    ----------
    log_directory : str
        Directory receiving the log file. Created if missing.
    enable_logging : bool
        Attach the file and console handlers; otherwise only a
        ``NullHandler`` is installed.
    level : int or str
        Threshold of the run log. ``DEBUG`` also records the full parameter
        set and per-level diagnostics.
    Returns
    -------
    logging.Logger
        The root logger instance.
    """
    os.makedirs(log_directory, exist_ok=True)

    root_logger = logging.getLogger()
    if root_logger.hasHandlers() and root_logger.level != logging.NOTSET:
        return root_logger

    if enable_logging:
        return initiate_logger(log_directory=log_directory, level=level)

    root_logger.addHandler(logging.NullHandler())
    return root_logger


def run_log_path(log_directory: str) -> str:
    """Per-process log file path.

    The name is ``densematch-YYYY-MM-DD-HH-MM-SS-<hostname>-<identifier>.log``
    where the identifier is the Slurm task identifier under Slurm and the
    process id otherwise.
    """
    slurm_keys = ("SLURM_PROCID", "SLURM_NODEID", "SLURM_ARRAY_TASK_ID", "SLURM_JOB_ID")
    slurm_id = next((os.environ.get(k) for k in slurm_keys if os.environ.get(k)), None)
    identifier = slurm_id or str(os.getpid())
    timestamp = datetime.now().strftime("%Y-%m-%d-%H-%M-%S")
    name = f"{LOG_PREFIX}-{timestamp}-{socket.gethostname()}-{identifier}.log"
    return os.path.join(log_directory, name)


def initiate_logger(log_directory, level: Union[int, str] = logging.INFO) -> logging.Logger:
    """Send records at ``level`` and above to a run log file and to stdout.

    Existing root handlers are replaced. Python warnings, such as the
    accuracy warnings of matrix logarithms, are routed into the log.

    Parameters
    ----------
    log_directory : str
        The directory where the log file will be created.
    level : int or str
        Threshold for both handlers.
    Returns
    -------
    logging.Logger
        The configured root logger instance.
    """
    log_path = run_log_path(log_directory)
    root_logger = logging.getLogger()

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in (logging.FileHandler(log_path, mode="a"), logging.StreamHandler(sys.stdout)):
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    root_logger.setLevel(level)
    logging.captureWarnings(True)
    root_logger.info(f"Logging to {log_path}")
    return root_logger
