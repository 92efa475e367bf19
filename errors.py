# errors.py


class ExecQError(Exception):
    """Base class for queue and stream errors."""


class JobNotFoundError(ExecQError):
    def __init__(self, job_id):
        super().__init__(f"job {job_id} not found")
        self.job_id = job_id


class JobStateError(ExecQError):
    """A transition was requested from a status that does not allow it."""

    def __init__(self, job_id, status, target):
        super().__init__(f"job {job_id} is {status}, cannot move to {target}")
        self.job_id = job_id
        self.status = status
        self.target = target


class InvalidJobError(ExecQError):
    pass


class SignalNotFoundError(ExecQError):
    def __init__(self, signal_id):
        super().__init__(f"load signal failed: signal {signal_id} not found")
        self.signal_id = signal_id


class BrokerError(ExecQError):
    pass


class StreamAuthError(ExecQError):
    pass
