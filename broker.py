# broker.py
import logging

import requests

from errors import BrokerError

logger = logging.getLogger(__name__)


class Broker:
    """Places the order for one signal. Raise on any rejection."""

    def execute(self, signal, job_id):
        raise NotImplementedError


class HttpBroker(Broker):
    """
    Forwards a signal to an order-executor HTTP endpoint.

    The request body is {"signal": ..., "queue_id": job_id}; any non-2xx
    response is a BrokerError carrying the status and response text.
    """

    def __init__(self, url, token=None, timeout=15.0, session=None):
        self.url = url
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def execute(self, signal, job_id):
        headers = {"content-type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            res = self.session.post(
                self.url,
                json={"signal": signal, "queue_id": job_id},
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise BrokerError(f"executor request failed: {e}") from e

        if not res.ok:
            raise BrokerError(f"executor {res.status_code}: {res.text}")

        logger.debug(f"Executor accepted job {job_id} ({res.status_code})")
        try:
            return res.json()
        except ValueError:
            return {"raw": res.text}
