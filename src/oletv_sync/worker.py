"""Processo worker: processador da fila e, opcionalmente, importação periódica.

Uso: oletv-sync-worker [continuous|once]
"""
from __future__ import annotations
import signal
import sys
import threading
from kink import di
from .core.di import bootstrap_di
from .core.logging import get_logger, set_trace_id
from .core.settings import Settings
from .tasks import bulk_importer, queue_processor

log = get_logger()

def run_once() -> int:
    set_trace_id()
    summary = queue_processor.QueueProcessor().process_once()
    return 1 if summary.skipped else 0

def run_continuous() -> int:
    settings = di[Settings]
    tasks = [queue_processor.build_task(settings=settings)]
    if settings.import_interval_s > 0:
        tasks.append(bulk_importer.build_task(settings=settings))
    stop = threading.Event()

    def _shutdown(signum, _frame):
        log.info("worker_signal", signal=signum)
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    for t in tasks:
        t.start()
    log.info("worker_started", tasks=[t.name for t in tasks])
    stop.wait()
    for t in tasks:
        t.stop()
    log.info("worker_stopped")
    return 0

def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    mode = args[0] if args else "continuous"
    if mode not in ("continuous", "once"):
        print("uso: oletv-sync-worker [continuous|once]", file=sys.stderr)
        return 2
    bootstrap_di()
    return run_once() if mode == "once" else run_continuous()

if __name__ == "__main__":
    sys.exit(main())
