"""
Results Writer
==============
Persists the engine's terminal Result as a single JSON record.

The record is written to a temporary file in the target directory and
moved into place with os.replace, so readers either see the previous file
or the complete new one, never a partial write.
"""
import os
import logging
import tempfile
from typing import Union

from ci_engine.models.result import FailedResult, SucceededResult, TimedOutResult

logger = logging.getLogger(__name__)

AnyResult = Union[SucceededResult, FailedResult, TimedOutResult]


class ResultsWriter:
    """
    Service responsible for writing the terminal Result for the calling layer.
    """

    @staticmethod
    def write_results(result: AnyResult, output_path: str = "results.json") -> bool:
        """
        Atomically write `result` as JSON.

        Returns
        -------
        bool
            True when the record was written.
        """
        abs_output = os.path.abspath(output_path)
        directory = os.path.dirname(abs_output)
        tmp_path = ""
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".results-", suffix=".json.tmp", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(result.to_json())
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, abs_output)
            logger.info("Wrote %s result to %s", result.kind, abs_output)
            return True

        except OSError as e:
            logger.error("Failed to write %s: %s", abs_output, e, exc_info=True)
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            return False
