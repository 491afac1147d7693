"""Wait for asynchronous OCI operations with a progress bar for each."""
import logging
import threading
import time
from typing import Callable, Dict, Tuple

import oci
from requests.exceptions import RequestException

from ... import constants
from ...errors import WorkRequestError
from ..waiter import Waiter, wait_for
from .client import work_request_client

logger = logging.getLogger("ocnectl.oci.workrequests")

STATUS_SUCCEEDED = "SUCCEEDED"
STATUS_FAILED = "FAILED"
STATUS_CANCELED = "CANCELED"

StatusFunc = Callable[[str, str], Tuple[str, float]]


def is_transient(err: Exception) -> bool:
    """Whether a failed status lookup is worth repeating."""
    if isinstance(err, oci.exceptions.ServiceError):
        return err.status == 429 or err.status >= 500
    return isinstance(err, RequestException)


def get_work_request_status(work_request_id: str, profile: str = constants.OCI_DEFAULT_PROFILE) -> Tuple[str, float]:
    """The status and percent complete of a work request."""
    request = work_request_client(profile).get_work_request(work_request_id).data
    return request.status, float(request.percent_complete or 0)


class WorkRequestWait:
    """Polled state of one work request."""

    def __init__(self, work_request_id: str, prefix: str, profile: str,
                 get_status: StatusFunc = get_work_request_status,
                 poll_interval: float = constants.OCI_WORK_REQUEST_POLL_SECONDS,
                 retries: int = constants.OCI_WORK_REQUEST_STATUS_RETRIES):
        self.work_request_id = work_request_id
        self.prefix = prefix
        self.profile = profile
        self.get_status = get_status
        self.poll_interval = poll_interval
        self.retries = retries
        self.status = ""
        self.percent_complete = 0.0
        self._lock = threading.Lock()

    def wait(self) -> None:
        failures = 0
        while True:
            try:
                status, complete = self.get_status(self.work_request_id, self.profile)
            except (oci.exceptions.ServiceError, RequestException) as e:
                if not is_transient(e) or failures >= self.retries:
                    raise WorkRequestError(f"Could not get status of work request {self.work_request_id}: {e}") from e
                failures += 1
                logger.debug("Retrying status of work request %s: %s", self.work_request_id, e)
                time.sleep(self.poll_interval)
                continue
            failures = 0
            with self._lock:
                self.status = status
                self.percent_complete = complete

            if status in (STATUS_FAILED, STATUS_CANCELED):
                raise WorkRequestError(f"Work request {self.work_request_id} {status.lower()}")
            if status == STATUS_SUCCEEDED:
                return
            time.sleep(self.poll_interval)

    def progress(self) -> Tuple[str, float]:
        with self._lock:
            return self.prefix, self.percent_complete


def wait_for_work_requests(requests: Dict[str, str], profile: str = constants.OCI_DEFAULT_PROFILE,
                           get_status: StatusFunc = get_work_request_status,
                           poll_interval: float = constants.OCI_WORK_REQUEST_POLL_SECONDS,
                           quiet: bool = False) -> None:
    """Wait until every work request has finished.

    Args:
        requests: Work request id to the label shown next to its progress bar
        profile: OCI configuration profile
        get_status: Status lookup, replaceable for tests
        poll_interval: Seconds between status polls
        quiet: Do not draw progress

    Raises:
        WorkRequestError: If any work request failed
    """
    waiters = []
    for work_request_id, prefix in requests.items():
        w = WorkRequestWait(work_request_id, prefix, profile, get_status=get_status, poll_interval=poll_interval)
        waiters.append(Waiter(prefix, w.wait, message_function=w.progress))

    if wait_for(waiters, quiet=quiet):
        failed = [str(w.error) for w in waiters if w.error is not None]
        raise WorkRequestError("; ".join(failed))


def wait_for_work_request(work_request_id: str, prefix: str, profile: str = constants.OCI_DEFAULT_PROFILE) -> None:
    wait_for_work_requests({work_request_id: prefix}, profile)
