from __future__ import annotations

import logging
import os
import threading
from typing import Iterator, Optional

logger = logging.getLogger("Tail")

DEFAULT_POLL_INTERVAL = 0.2


def tail_follow(
    path: str,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    stop: Optional[threading.Event] = None,
) -> Iterator[str]:
    """
    Yield lines appended to `path` from the moment we attach, like `tail -F -n0`.

    Handles rotation (inode change) and a missing file by waiting for it.
    Returns once `stop` is set; the check happens between lines and while
    waiting for new data.
    """
    stop = stop or threading.Event()
    f = None
    inode = None
    attached = False

    try:
        while not stop.is_set():
            try:
                st = os.stat(path)
                if f is None or inode != st.st_ino:
                    if f:
                        f.close()
                        logger.info("%s rotated, reopening", path)
                    f = open(path, "r", encoding="utf-8", errors="ignore")
                    inode = st.st_ino
                    if not attached:
                        f.seek(0, os.SEEK_END)  # no backlog
                        attached = True
                elif f.tell() > st.st_size:
                    logger.info("%s truncated, rewinding", path)
                    f.seek(0, os.SEEK_SET)

                pos = f.tell()
                line = f.readline()
                if line.endswith("\n"):
                    yield line.rstrip("\n")
                    continue
                if line:
                    # partial write; wait for the rest of the line
                    f.seek(pos, os.SEEK_SET)
                stop.wait(poll_interval)
            except FileNotFoundError:
                # a file created after we attached has no backlog to skip
                attached = True
                stop.wait(poll_interval)
            except OSError as e:
                logger.error("[tail] error on %s: %s", path, e)
                stop.wait(poll_interval)
    finally:
        if f:
            f.close()
