"""Log persistence: LogSink writes log lines as enriched documents.

StoreHandler adapts the standard library ``logging`` module so any
application logger can persist through the sink.  Records coming from the
engine's own loggers (``enricher.*``) or tagged with an internal source are
skipped, which keeps store failures from feeding back into the store.
"""

import logging

from enricher.dispatch import Dispatcher
from enricher.event_rules import annotate
from enricher.records import common_meta, is_internal, now_iso
from enricher.rules import RuleSet
from enricher.store import Store

LEVELS = ("debug", "info", "warn", "error")

_LEVEL_NAMES = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "error",
}


class LogSink:

    def __init__(self, store: Store, dispatcher: Dispatcher, rules: RuleSet,
                 service: str, env: str, collection: str = "logs",
                 tenant_id_resolver=None, transform=None):
        self.store = store
        self.dispatcher = dispatcher
        self.rules = rules
        self.service = service
        self.env = env
        self.collection = collection
        self.tenant_id_resolver = tenant_id_resolver
        self.transform = transform

    def to_record(self, level: str, message: str, meta: dict | None = None) -> dict:
        record = {
            "ts": now_iso(),
            "level": level,
            "message": message,
            **common_meta(self.service, self.env, meta, self.tenant_id_resolver),
        }
        return annotate(record, self.rules.event_rules)

    def write(self, level: str, message: str, meta: dict | None = None):
        if level not in LEVELS:
            raise ValueError(f"unknown log level {level!r}")
        if is_internal(meta):
            return None

        record = self.to_record(level, message, meta)
        if self.transform is not None:
            record = self.transform(record, meta)

        async def exec_():
            await self.store.collection(self.collection).create(
                record, record.get("source") or self.service, f"log:{level}")

        return self.dispatcher.submit(exec_, record, component="log")


class StoreHandler(logging.Handler):
    """logging.Handler that persists records through a LogSink.

    ``extra={"meta": {...}}`` on a log call becomes the record's meta.
    """

    def __init__(self, sink: LogSink, level=logging.NOTSET):
        super().__init__(level)
        self.sink = sink

    def emit(self, record: logging.LogRecord) -> None:
        if record.name == "enricher" or record.name.startswith("enricher."):
            return
        try:
            meta = dict(getattr(record, "meta", None) or {})
            meta.setdefault("logger", record.name)
            level = _LEVEL_NAMES.get(record.levelno, "info")
            self.sink.write(level, record.getMessage(), meta)
        except Exception:
            self.handleError(record)
