import os
from pathlib import Path

import pytest

from cryptvault.lock import LockBusy, RunLock


def test_second_holder_is_refused(tmp_path):
    path = str(tmp_path / "run" / "backup.lock")
    with RunLock(path):
        assert Path(path).read_text(encoding="ascii") == f"{os.getpid()}\n"
        with pytest.raises(LockBusy, match=f"pid {os.getpid()}"):
            RunLock(path).acquire()
    # released: the next run gets it, the file stays behind
    with RunLock(path):
        pass
    assert os.path.exists(path)


def test_release_is_idempotent(tmp_path):
    lock = RunLock(str(tmp_path / "x.lock")).acquire()
    lock.release()
    lock.release()
