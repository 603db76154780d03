"""Progress notification wrapper every API operation passes through"""
import logging
import time
from typing import Any, Optional

from sfsync.models import ProgressSink
from sfsync.utils.logging import log_operation

logger = logging.getLogger(__name__)


class ProgressNotification:

    @staticmethod
    def notify(progress: Optional[ProgressSink], message: str, increment: Optional[int] = None) -> None:
        """Send ``message`` to the sink, or to the log when there is none."""
        if progress is None:
            if increment is None:
                logger.info(message)
            else:
                logger.info("%s (%s%%)", message, increment)
            return

        try:
            progress(message, increment)
        except Exception as e:
            # A broken sink must not fail the request it reports on
            logger.warning("Progress sink failed: %s", e)

    @staticmethod
    def show_progress(api: Any, method_name: str, *args, progress: Optional[ProgressSink] = None, **kwargs) -> Any:
        """Call ``api.<method_name>`` with a progress sink and log how it went.

        Exceptions propagate to the caller unchanged.
        """
        method = getattr(api, method_name)
        start = time.time()
        ProgressNotification.notify(progress, f"Start {method_name} request...")
        try:
            result = method(*args, progress=progress, **kwargs)
        except Exception as e:
            log_operation(logger, method_name, (time.time() - start) * 1000, False,
                          project=getattr(api, "project_name", None), error=str(e))
            raise

        log_operation(logger, method_name, (time.time() - start) * 1000, True,
                      project=getattr(api, "project_name", None))
        return result
