# events.py
import logging

logger = logging.getLogger(__name__)


class EventLog:
    """
    Fire-and-forget structured event sink.

    Every event is logged and, when a store is attached, written to its
    events table as {fn, stage, payload}. A failing write is logged and
    dropped; it never reaches the pipeline.
    """

    def __init__(self, store=None, fn="exec-worker"):
        self.store = store
        self.fn = fn

    def emit(self, stage, **payload):
        logger.debug(f"[{self.fn}] {stage}: {payload}")
        if self.store is None:
            return
        try:
            self.store.log_event(self.fn, stage, payload)
        except Exception as e:
            logger.warning(f"Could not record {stage} event: {e}")
