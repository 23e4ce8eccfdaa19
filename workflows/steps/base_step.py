"""
Workflow step contract

Every terrain pipeline step reads the shared site context, does its work and
hands back a result dict. Steps log their own progress and timing under a
`WorkflowStep.<name>` logger.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional, Union
from pathlib import Path
import logging
from datetime import datetime

STEP_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class WorkflowStep(ABC):
    """
    One stage of the site pipeline.

    Subclasses implement execute(). A step never raises out of execute():
    failures are logged and returned as {'success': False, 'error': ...}
    so the site orchestrator can stop that site.
    """

    def __init__(self, step_name: str, step_category: str, description: str = ""):
        """
        Parameters:
        -----------
        step_name : str
            Registry name of the step (e.g. 'terrain_metrics')
        step_category : str
            Pipeline stage: acquisition, hydrology, terrain or visualization
        description : str, optional
            One line shown in logs and metadata
        """
        self.step_name = step_name
        self.step_category = step_category
        self.description = description
        self.logger = self._setup_logging()

        self.status = 'pending'
        self.error = None
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.execution_time_seconds: Optional[float] = None

    @abstractmethod
    def execute(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run the step against the site context.

        Parameters:
        -----------
        inputs : Dict[str, Any]
            Configuration, site, site directories and the outputs of the
            steps that already ran

        Returns:
        --------
        Dict[str, Any]
            Step outputs; always contains 'success'
        """

    def validate_inputs(self, inputs: Dict[str, Any], required_keys: List[str]) -> None:
        """Raise ValueError naming every context key the step needs but did not get"""
        missing = [key for key in required_keys if key not in inputs]
        if missing:
            raise ValueError(f"{self.step_name} is missing context keys: {missing}")

    def validate_file_exists(self, file_path: Union[str, Path]) -> Path:
        """Return `file_path` as a Path, or raise FileNotFoundError if an earlier step did not write it"""
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"{self.step_name} input does not exist: {file_path}")
        return path

    def _finish(self, status: str) -> str:
        """Stamp the end time and return the elapsed-time suffix for log lines"""
        self.end_time = datetime.now()
        self.status = status
        if self.start_time is None:
            return ""
        self.execution_time_seconds = (self.end_time - self.start_time).total_seconds()
        return f" ({self.execution_time_seconds:.1f}s)"

    def _log_step_start(self):
        self.start_time = datetime.now()
        self.end_time = None
        self.execution_time_seconds = None
        self.status = 'running'
        self.error = None
        self.logger.info(f"Starting step: {self.step_name}")

    def _log_step_complete(self, outputs: List[str] = None):
        """Mark the step completed and list the files it wrote"""
        elapsed = self._finish('completed')
        self.logger.info(f"Completed step: {self.step_name}{elapsed}")
        for output in outputs or []:
            self.logger.info(f"   wrote {output}")

    def _log_step_failed(self, error_msg: str):
        elapsed = self._finish('failed')
        self.error = error_msg
        self.logger.error(f"Failed step: {self.step_name}{elapsed}: {error_msg}")

    def _failure(self, error: Exception) -> Dict[str, Any]:
        """Log an exception and wrap it in the step failure result"""
        error_msg = f"{type(error).__name__}: {error}"
        self._log_step_failed(error_msg)
        return {
            'success': False,
            'error': error_msg,
            'step_name': self.step_name,
        }

    def _setup_logging(self) -> logging.Logger:
        logger = logging.getLogger(f"WorkflowStep.{self.step_name}")
        logger.setLevel(logging.INFO)

        # One console handler per step logger
        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(STEP_LOG_FORMAT))
            logger.addHandler(handler)

        return logger

    def get_execution_metadata(self) -> Dict[str, Any]:
        """Status, error and timing of the last execute() call, JSON friendly"""
        return {
            'step_name': self.step_name,
            'step_category': self.step_category,
            'description': self.description,
            'status': self.status,
            'error': self.error,
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'execution_time_seconds': self.execution_time_seconds,
        }

    def __str__(self) -> str:
        return f"{self.step_category}.{self.step_name}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}(step_name={self.step_name!r}, status={self.status!r})"
