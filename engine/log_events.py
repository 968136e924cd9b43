import json
import logging


def _default(value):
    isoformat = getattr(value, "isoformat", None)
    if callable(isoformat):
        return isoformat()
    return str(value)


def log_event(level, message, **fields):
    payload = {"message": message, **fields}
    try:
        logging.log(level, json.dumps(payload, sort_keys=True, default=_default))
    except (TypeError, ValueError) as exc:
        logging.log(level, f"log_event_serialization_failed: {exc} message={message}")
