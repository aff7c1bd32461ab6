from __future__ import annotations

import queue

from misfit_studio.progress import ProgressLog


def test_progress_log_keeps_order_and_never_blocks() -> None:
    subscriber: queue.Queue = queue.Queue(maxsize=1)
    log = ProgressLog(subscriber=subscriber)

    log.info("one")
    log.warning("two")
    log.error("three")

    assert log.messages() == ["one", "two", "three"]
    assert [e.level for e in log.entries] == ["info", "warning", "error"]
    assert subscriber.get_nowait().message == "one"
    assert log.dropped == 2
    assert log.entries[0].format().endswith("] one")
