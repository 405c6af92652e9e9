import logging
import sys
import warnings

import orjson
from pydantic_core import to_jsonable_python

from daolens import env

# NOTE: Loggers of libraries which log every request
NOISY_LOGGERS = ('aiohttp', 'asyncio', 'urllib3')


def _json_formatter() -> logging.Formatter:
    from pythonjsonlogger import jsonlogger

    return jsonlogger.JsonFormatter(  # type: ignore[no-untyped-call]
        '%(created)s %(levelname)s %(name)s %(message)s',
        json_serializer=lambda *a, **kw: orjson.dumps(*a, default=to_jsonable_python).decode(),  # type: ignore[misc]
        rename_fields={'levelname': 'level', 'name': 'logger'},
    )


def set_up_logging() -> None:
    """Attach a single stderr handler to the root logger; calling it again is a no-op"""
    root = logging.getLogger()
    if any(getattr(handler, '_daolens', False) for handler in root.handlers):
        return

    handler = logging.StreamHandler(stream=sys.stderr)
    if env.JSON_LOG:
        handler.setFormatter(_json_formatter())
    else:
        handler.setFormatter(logging.Formatter('%(levelname)-8s %(name)-24s %(message)s'))
    handler._daolens = True  # type: ignore[attr-defined]
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger('daolens').setLevel(logging.DEBUG if env.DEBUG else logging.INFO)


def set_up_process() -> None:
    """Set up interpreter process-wide state"""
    # NOTE: pytest manages warnings itself
    if env.TEST:
        return

    # NOTE: Format warnings as normal log messages
    logging.captureWarnings(True)
    warnings.formatwarning = lambda msg, *a, **kw: str(msg)
