import os
import json
import fcntl
import copy
import logging
import time
import random
from typing import Any, Callable, Dict, Tuple

logger = logging.getLogger(__name__)

class ConflictError(Exception):
    pass

class CASDocument:
    """
    A versioned JSON document shared by every replica on the host.
    Writes go through compare-and-swap on the version number, guarded by a
    POSIX lock file and published with atomic replaces, so a read-modify-write
    applied through `transact` is atomic across threads and processes.
    """
    def __init__(self, filename_base: str):
        self.data_file = f"{filename_base}.json"
        self.meta_file = f"{filename_base}.meta"
        self.lock_file = f"{filename_base}.lock"

        directory = os.path.dirname(self.data_file)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with open(self.lock_file, 'a') as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                if not os.path.exists(self.meta_file):
                    self._write_meta(0)
                if not os.path.exists(self.data_file):
                    self._write_data({})
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _write_meta(self, version: int):
        tmp_meta = f"{self.meta_file}.{os.getpid()}.tmp"
        with open(tmp_meta, 'w') as f:
            json.dump({"version": version}, f)
        os.replace(tmp_meta, self.meta_file)

    def _write_data(self, data: Dict[str, Any]):
        tmp_data = f"{self.data_file}.{os.getpid()}.tmp"
        with open(tmp_data, 'w') as f:
            json.dump(data, f)
        os.replace(tmp_data, self.data_file)

    def _read_version(self) -> int:
        try:
            with open(self.meta_file, 'r') as f:
                return json.load(f).get("version", 0)
        except (FileNotFoundError, json.JSONDecodeError):
            return 0

    def read(self) -> Tuple[Dict[str, Any], int]:
        """
        Read the current data and version.
        Returns:
            (dict, int): The JSON data and the version it was read at.
        """
        with open(self.lock_file, 'a') as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_SH)
            try:
                version = self._read_version()
                try:
                    with open(self.data_file, 'r') as f:
                        data = json.load(f)
                except (FileNotFoundError, json.JSONDecodeError):
                    data = {}
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return data, version

    def cas_write(self, new_data: Dict[str, Any], expected_version: int) -> Tuple[bool, int]:
        """
        Writes new_data only if the stored version still equals expected_version.
        Returns:
            (True, new_version) on success.
            (False, current_version) on conflict.
        """
        with open(self.lock_file, 'a') as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                current_version = self._read_version()
                if current_version != expected_version:
                    return False, current_version

                new_version = current_version + 1
                self._write_data(new_data)
                self._write_meta(new_version)
                return True, new_version
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def transact(self, apply_fn: Callable[[Dict[str, Any]], Any], max_retries: int = 10, base_delay: float = 0.01, max_delay: float = 1.0) -> Any:
        """
        Applies `apply_fn` to a fresh copy of the document and CAS-writes the
        result, retrying with exponential backoff and jitter on conflict.

        apply_fn mutates the dict it is given and returns the transaction's result.
        It may run several times, so it must not have side effects outside the dict.
        """
        for attempt in range(max_retries):
            data, version = self.read()
            working = copy.deepcopy(data)
            result = apply_fn(working)

            if working == data:
                # Nothing changed: the read itself is a consistent snapshot.
                return result

            ok, new_version = self.cas_write(working, version)
            if ok:
                logger.debug(f"{self.data_file} updated to version {new_version} on attempt {attempt + 1}")
                return result

            delay = min(base_delay * (2 ** attempt), max_delay) + random.uniform(0, 0.05)
            logger.debug(f"Conflict on {self.data_file} version {version}. Retrying in {delay:.3f}s (Attempt {attempt + 1}/{max_retries})")
            time.sleep(delay)

        raise ConflictError(f"Failed to update {self.data_file} after {max_retries} attempts.")
