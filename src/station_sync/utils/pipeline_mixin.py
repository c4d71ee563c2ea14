"""Pipeline execution mixin for multi-stage runs.

Provides stage-by-stage execution with coloured progress lines and a hook that
is called before each stage starts.
"""

from __future__ import annotations

from typing import Iterable, Callable, Any
from abc import abstractmethod

from colorama import Fore, Style

from .errors import RunCancelled, RunFailure


class PipelineMixin:
    """Mixin for classes that run a fixed sequence of stages.

    Each stage receives the previous stage's result as its first argument
    (except the first stage). Stage failures are wrapped in RunFailure;
    cancellation propagates unchanged.

    Usage:
        class MyRunner(PipelineMixin):
            def _load_pipeline(self):
                return [
                    ('Step 1', self.step1_method, {}),
                    ('Step 2', self.step2_method, {'param': value}),
                ]
    """

    # Must be set by the class using this mixin
    MODALITY: str

    @abstractmethod
    def _load_pipeline(self, **kwargs: Any) -> Iterable[tuple[Any, Callable, dict[str, Any]]]:
        """Define the pipeline steps.

        Returns:
            List of tuples: (stage, function, kwargs)
        """
        ...

    def _on_stage_start(self, stage: Any) -> None:
        """Called before each stage runs. No-op by default."""

    def _execute_pipeline(self, progress: bool = True, **pipeline_kwargs: Any) -> Any:
        """Execute the pipeline and return the final result.

        Args:
            progress: Whether to print progress messages (default: True)
            **pipeline_kwargs: Additional parameters passed to _load_pipeline()

        Returns:
            Result from the final pipeline step

        Raises:
            RunCancelled: a stage observed cancellation
            RunFailure: a stage raised anything else
        """
        pipeline = self._load_pipeline(**pipeline_kwargs)
        result = None
        first = True

        for stage, func, kwargs in pipeline:
            self._on_stage_start(stage)
            try:
                if first:
                    result = func(**kwargs)
                else:
                    result = func(result, **kwargs)
                first = False
                if progress:
                    self._log_step_success(str(stage))
            except RunCancelled:
                self._log_step_failure(str(stage), "cancelled")
                raise
            except Exception as e:
                self._log_step_failure(str(stage), e)
                raise RunFailure(str(stage), e) from e

        return result

    def _log_step_success(self, step_name: str) -> None:
        """Print success message for a pipeline step."""
        max_len = len('ENRICHING_COORDINATES')  # Longest stage name
        padding = max(1, max_len - len(step_name) + 4)

        modality = getattr(self, 'MODALITY', 'Pipeline').title()
        print(f'{modality} -- {step_name} {"-" * padding}> {Fore.GREEN}Complete{Style.RESET_ALL}')

    def _log_step_failure(self, step_name: str, error: Exception | str) -> None:
        """Print failure message for a pipeline step."""
        max_len = len('ENRICHING_COORDINATES')
        padding = max(1, max_len - len(step_name) + 4)

        modality = getattr(self, 'MODALITY', 'Pipeline').title()
        print(f'{modality} -- {step_name} {"-" * padding}> {Fore.RED}Failed{Style.RESET_ALL}: {error}')
