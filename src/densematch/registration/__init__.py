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

"""
Pyramidal dense block-matching registration.

This module provides the bridge that runs a coarse-to-fine block-matching
registration estimating a stationary velocity field (SVF) between a
reference and a floating volume. Implementation details are in submodules:
- blocks: Block sampling
- matching: Per-block correspondence search
- aggregation: Dense velocity field estimation
- method: Per-level iterative registration
- svf: Exponentiation and resampling
"""

# Environment setup
import os

# Limit internal threading in BLAS/ITK/etc. to avoid oversubscription
os.environ.setdefault("OMP_NUM_THREADS", "1")
os.environ.setdefault("OPENBLAS_NUM_THREADS", "1")
os.environ.setdefault("MKL_NUM_THREADS", "1")
os.environ.setdefault("VECLIB_MAXIMUM_THREADS", "1")
os.environ.setdefault("NUMEXPR_NUM_THREADS", "1")
os.environ.setdefault("ITK_GLOBAL_DEFAULT_NUMBER_OF_THREADS", "1")

# Standard Library Imports
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Union

# Third Party Imports
import numpy as np

# Local Imports
from densematch.io.log import initialize_logging
from densematch.io.read import VolumeOpener
from densematch.io.write import write_volume
from densematch.preprocess.pyramid import build_pyramid
from densematch.registration.aggregation import make_aggregator
from densematch.registration.blocks import BlockSampler
from densematch.registration.common import calculate_metrics, inspect_velocity_field
from densematch.registration.control import CancellationToken, ProgressReporter
from densematch.registration.errors import RegistrationError
from densematch.registration.matching import BlockMatcher
from densematch.registration.method import make_registration_method
from densematch.registration.metrics import make_metric
from densematch.registration.optimizers import make_optimizer
from densematch.registration.parameters import RegistrationParameters, SymmetryType
from densematch.registration.svf import (
    exponentiate,
    resample_image,
    resample_to_grid,
    resample_vector_field,
    scale_field,
)
from densematch.volume import Volume, physical_overlap

# Start logging
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

# Type Aliases
VolumeSource = Union[Volume, str, os.PathLike]

#: Fill value for voxels mapped outside the floating volume.
DEFAULT_FILL_VALUE = 0.0


class RunState(Enum):
    """Lifecycle of a registration run."""

    SETUP = "setup"
    RUNNING = "running"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class RegistrationResult:
    """Outputs of a registration run."""

    #: DONE, or ABORTED when the run was cancelled.
    state: RunState
    #: Floating volume warped onto the reference grid.
    output_image: Volume
    #: Velocity field of the full transform on the reference grid.
    velocity_field: Volume
    #: Pyramid levels fully or partially processed, coarsest first.
    levels_processed: List[int] = field(default_factory=list)
    #: Stop condition reported by each processed level.
    stop_conditions: List[str] = field(default_factory=list)


class PyramidalDenseSVFMatching:
    """
    Coarse-to-fine dense block-matching registration of two volumes.

    Both volumes are reduced to pyramids. Every used level runs an iterative
    block-matching registration starting from the velocity field of the
    previous, coarser level resampled onto the new grid. The final velocity
    field is exponentiated into a displacement field used to warp the
    floating volume onto the reference grid.

    Attributes
    ----------
    reference : Volume
        The fixed reference volume.
    floating : Volume
        The volume to align onto the reference.
    parameters : RegistrationParameters
        Run configuration.
    mask : Volume or None
        Optional reference mask whose zero region acts as a dam.
    report_metrics : bool
        Whether to log ANTs similarity metrics before and after.
    state : RunState
        Current lifecycle state.
    """

    def __init__(
        self,
        reference: VolumeSource,
        floating: VolumeSource,
        parameters: Optional[RegistrationParameters] = None,
        mask: Optional[VolumeSource] = None,
        log_directory: Optional[Union[str, os.PathLike]] = None,
        enable_logging: bool = True,
        report_metrics: bool = False,
        log_level: Union[int, str] = logging.INFO,
    ):
        """
        Initialize and validate the registration.

        Parameters
        ----------
        reference : Volume, str or os.PathLike
            The reference volume, or a path readable by VolumeOpener.
        floating : Volume, str or os.PathLike
            The floating volume, or a path readable by VolumeOpener.
        parameters : RegistrationParameters, optional
            Run configuration, defaults when omitted.
        mask : Volume, str or os.PathLike, optional
            Mask on the reference grid.
        log_directory : str or os.PathLike, optional
            When given, logging is initialised to a file in this directory.
        enable_logging : bool, optional
            Whether to attach log handlers when ``log_directory`` is given.
        report_metrics : bool, optional
            Log ANTs similarity metrics before and after registration.
        log_level : int or str, optional
            Threshold of the run log initialised in ``log_directory``.

        Raises
        ------
        TypeError
            If an input is neither a Volume nor a path.
        ValueError
            If the parameters are invalid, a volume is not scalar, the mask
            does not match the reference grid, or the volumes do not overlap.
        """
        if log_directory is not None:
            initialize_logging(
                log_directory=str(log_directory),
                enable_logging=enable_logging,
                level=log_level,
            )

        #: RegistrationParameters: Run configuration.
        self.parameters = (parameters or RegistrationParameters()).validate()

        #: VolumeOpener: Opener used for path inputs.
        self._volume_opener = VolumeOpener()

        #: Volume: The fixed reference volume.
        self.reference = self._load(reference, "reference")

        #: Volume: The volume aligned onto the reference.
        self.floating = self._load(floating, "floating")

        #: Volume or None: Optional reference mask.
        self.mask = None if mask is None else self._load(mask, "mask")

        #: bool: Whether to log similarity metrics before and after.
        self.report_metrics = report_metrics

        self._validate_inputs()

        self.state = RunState.SETUP
        self.result: Optional[RegistrationResult] = None
        self._cancellation = CancellationToken()
        self._callbacks: List[Callable[[float], None]] = []

        logger.info(
            f"Reference {self.reference.shape}, floating {self.floating.shape}, "
            f"{self.parameters.number_of_pyramid_levels} pyramid levels, "
            f"{self.parameters.threads} threads."
        )
        logger.debug(f"Registration parameters:\n{self.parameters.describe()}")

    def _load(self, source: VolumeSource, name: str) -> Volume:
        if isinstance(source, Volume):
            return source
        if isinstance(source, (str, os.PathLike)):
            volume, _ = self._volume_opener.open(source)
            logger.info(f"Loaded {name} volume {source}. Shape: {volume.shape}.")
            return volume
        raise TypeError(
            f"The {name} must be a Volume or a path, got {type(source).__name__}."
        )

    def _validate_inputs(self) -> None:
        for name, volume in (("reference", self.reference), ("floating", self.floating)):
            if volume.is_vector:
                raise ValueError(f"The {name} volume must be scalar.")
        if not physical_overlap(self.reference, self.floating):
            raise ValueError(
                "The reference and floating volumes do not overlap in physical space."
            )
        if self.mask is not None and not self.mask.same_geometry(self.reference):
            raise ValueError("The mask must lie on the reference grid.")

    def add_progress_callback(self, callback: Callable[[float], None]) -> None:
        """Register an observer receiving the completed fraction in [0, 1]."""
        self._callbacks.append(callback)

    def abort(self) -> None:
        """Request cancellation; the run stops after in-flight blocks finish."""
        logger.info("Abort requested.")
        self._cancellation.cancel()

    @property
    def levels_used(self) -> List[int]:
        """Pyramid indices processed, coarsest first."""
        levels = self.parameters.number_of_pyramid_levels
        return [i for i in range(levels) if i + self.parameters.last_pyramid_level < levels]

    def run(self) -> RegistrationResult:
        """
        Register the floating volume onto the reference.

        Returns
        -------
        RegistrationResult
            Warped floating volume and velocity field; state ABORTED when the
            run was cancelled, with the transform accumulated so far.

        Raises
        ------
        RuntimeError
            If the bridge has already run.
        RegistrationError
            If any stage of the run fails; the state becomes FAILED.
        """
        if self.state is not RunState.SETUP:
            raise RuntimeError(f"Registration already ran, state: {self.state.value}.")
        self.state = RunState.RUNNING

        try:
            with ThreadPoolExecutor(max_workers=self.parameters.threads) as executor:
                result = self._register(executor)
        except RegistrationError:
            self.state = RunState.FAILED
            raise
        except Exception as error:
            self.state = RunState.FAILED
            logger.error(f"Registration failed: {error}")
            raise RegistrationError("Registration failed.") from error

        self.state = result.state
        self.result = result
        return result

    def _register(self, executor: Executor) -> RegistrationResult:
        if self.report_metrics:
            logger.info("Similarity before registration:")
            calculate_metrics(self.reference, resample_to_grid(self.floating, self.reference))

        parameters = self.parameters
        levels = parameters.number_of_pyramid_levels
        reference_pyramid = build_pyramid(self.reference, levels)
        floating_pyramid = build_pyramid(self.floating, levels)
        mask_pyramid = None
        if self.mask is not None:
            mask_pyramid = build_pyramid(
                self.mask.with_data(np.asarray(self.mask.data) != 0), levels
            )

        progress = ProgressReporter(len(self.levels_used) * parameters.maximum_iterations)
        for callback in self._callbacks:
            progress.add_callback(callback)

        velocity: Optional[Volume] = None
        levels_processed: List[int] = []
        stop_conditions: List[str] = []
        for level in self.levels_used:
            if self._cancellation.cancelled:
                break

            reference = reference_pyramid[level]
            floating = floating_pyramid[level]
            mask = None
            if mask_pyramid is not None:
                mask = mask_pyramid[level].with_data(mask_pyramid[level].data > 0.5)

            if velocity is None:
                velocity = reference.zeros_field()
            else:
                velocity = resample_vector_field(velocity, reference)

            logger.info(
                f"Processing pyramid level {level}, image size {reference.shape}, "
                f"mean spacing {reference.mean_spacing:.4f}."
            )
            method = self._make_method(
                reference, floating, mask, velocity, progress, executor
            )
            try:
                level_result = method.run()
            except Exception as error:
                logger.error(f"Registration failed at pyramid level {level}: {error}")
                raise RegistrationError(
                    f"Registration failed at pyramid level {level}."
                ) from error

            velocity = level_result.velocity
            levels_processed.append(level)
            stop_conditions.append(level_result.stop_condition)
            logger.info(f"Level {level} finished: {level_result.stop_condition}.")
            if level_result.cancelled:
                break

        if velocity is None:
            velocity = self.reference.zeros_field()
        elif not velocity.same_geometry(self.reference):
            velocity = resample_vector_field(velocity, self.reference)
        if parameters.symmetry is SymmetryType.KISSING:
            velocity = scale_field(velocity, 2.0)
        inspect_velocity_field(velocity)

        output = resample_image(
            self.floating, exponentiate(velocity), default_value=DEFAULT_FILL_VALUE
        )
        state = RunState.ABORTED if self._cancellation.cancelled else RunState.DONE
        logger.info(f"Registration {state.value}, levels processed: {levels_processed}.")

        if self.report_metrics:
            logger.info("Similarity after registration:")
            calculate_metrics(self.reference, output)

        return RegistrationResult(
            state=state,
            output_image=output,
            velocity_field=velocity,
            levels_processed=levels_processed,
            stop_conditions=stop_conditions,
        )

    def _make_method(self, reference, floating, mask, velocity, progress, executor):
        parameters = self.parameters
        mean_spacing = reference.mean_spacing
        sampler = BlockSampler(
            block_size=parameters.block_size,
            block_spacing=parameters.block_spacing,
            variance_threshold=parameters.variance_threshold,
            percentage_kept=parameters.percentage_kept,
            use_dam=parameters.use_transformation_dam,
            dam_distance=parameters.dam_distance_voxels,
        )
        matcher = BlockMatcher(
            kind=parameters.transform,
            metric=make_metric(parameters.metric),
            optimizer=make_optimizer(parameters, mean_spacing),
            number_of_threads=parameters.threads,
            cancellation=self._cancellation,
            executor=executor,
        )
        return make_registration_method(
            parameters.symmetry,
            reference=reference,
            floating=floating,
            parameters=parameters,
            sampler=sampler,
            matcher=matcher,
            aggregator=make_aggregator(parameters, mean_spacing, executor=executor),
            initial_velocity=velocity,
            cancellation=self._cancellation,
            progress=progress,
            mask=mask,
        )

    def _require_result(self) -> RegistrationResult:
        if self.result is None:
            raise RuntimeError("Run the registration first.")
        return self.result

    def output_displacement_field(self) -> Volume:
        """Displacement field ``exp(v)`` of the estimated transform."""
        return exponentiate(self._require_result().velocity_field)

    def write_outputs(
        self,
        result_file: Union[str, os.PathLike],
        transform_file: Optional[Union[str, os.PathLike]] = None,
    ) -> List[Path]:
        """
        Write the registered volume and, optionally, the velocity field.

        Parameters
        ----------
        result_file : str or os.PathLike
            Destination of the warped floating volume (compressed).
        transform_file : str or os.PathLike, optional
            Destination of the velocity field.

        Returns
        -------
        list of Path
            Files written.
        """
        result = self._require_result()
        written = [write_volume(result.output_image, result_file, compress=True)]
        logger.info(f"Registered image written to: {written[0]}")
        if transform_file is not None:
            written.append(write_volume(result.velocity_field, transform_file))
            logger.info(f"Velocity field written to: {written[-1]}")
        return written


def register_volumes(
    reference: VolumeSource,
    floating: VolumeSource,
    parameters: Optional[RegistrationParameters] = None,
    result_file: Optional[Union[str, os.PathLike]] = None,
    transform_file: Optional[Union[str, os.PathLike]] = None,
    mask: Optional[VolumeSource] = None,
    log_directory: Optional[Union[str, os.PathLike]] = None,
    enable_logging: bool = True,
    report_metrics: bool = False,
    progress_callback: Optional[Callable[[float], None]] = None,
    log_level: Union[int, str] = logging.INFO,
) -> RegistrationResult:
    """
    Register a floating volume onto a reference volume.

    This is a convenience function that creates a PyramidalDenseSVFMatching
    instance, runs it and writes the outputs when paths are given. For more
    control (abort, several callbacks), use the class directly.

    Parameters
    ----------
    reference : Volume, str or os.PathLike
        The reference volume or its path.
    floating : Volume, str or os.PathLike
        The floating volume or its path.
    parameters : RegistrationParameters, optional
        Run configuration.
    result_file : str or os.PathLike, optional
        Where to write the registered volume.
    transform_file : str or os.PathLike, optional
        Where to write the velocity field.
    mask : Volume, str or os.PathLike, optional
        Mask on the reference grid.
    log_directory : str or os.PathLike, optional
        Directory for the run log.
    enable_logging : bool, optional
        Whether to enable logging when ``log_directory`` is given.
    report_metrics : bool, optional
        Log ANTs similarity metrics before and after registration.
    progress_callback : callable, optional
        Observer receiving the completed fraction.
    log_level : int or str, optional
        Threshold of the run log.

    Returns
    -------
    RegistrationResult
        The registration outputs.

    Examples
    --------
    >>> from densematch.registration import register_volumes
    >>> result = register_volumes(
    ...     reference="reference.nii.gz",
    ...     floating="floating.nii.gz",
    ...     result_file="./results/registered.nii.gz",
    ... )
    """
    registrar = PyramidalDenseSVFMatching(
        reference=reference,
        floating=floating,
        parameters=parameters,
        mask=mask,
        log_directory=log_directory,
        enable_logging=enable_logging,
        report_metrics=report_metrics,
        log_level=log_level,
    )
    if progress_callback is not None:
        registrar.add_progress_callback(progress_callback)
    result = registrar.run()
    if result_file is not None:
        registrar.write_outputs(result_file, transform_file)
    return result
