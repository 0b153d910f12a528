"""
Volume management for services: creating host directories and enforcing their ownership.
"""
import errno
import os
import stat
from typing import List

import structlog

from ..errors import FilesystemError
from ..MODELS.runtime_state import VolumeObservation
from ..MODELS.service_spec import ConflictPolicy, VolumeBinding

# Failures that may clear up on their own, e.g. a backup job holding the directory
TRANSIENT_ERRNOS = {errno.EBUSY, errno.EAGAIN, errno.EINTR, errno.ETXTBSY, errno.EPERM, errno.EACCES}


class VolumeManager:
    """
    Inspects and prepares the host directories that services mount.
    """

    def __init__(self):
        self.logger = structlog.get_logger().bind(component="volume_manager")

    def inspect(self, path: str) -> VolumeObservation:
        """
        Stats a host directory.

        :param path: Absolute host path.
        :return: What is currently on disk; ``exists`` is False if nothing is there.
        """
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return VolumeObservation(path=path, exists=False)
        except OSError as e:
            raise FilesystemError(f"cannot stat {path}: {e}") from e
        if not stat.S_ISDIR(st.st_mode):
            raise FilesystemError(f"{path} exists and is not a directory")
        return VolumeObservation(
            path=path,
            exists=True,
            uid=st.st_uid,
            gid=st.st_gid,
            mode=stat.S_IMODE(st.st_mode),
        )

    def create(self, binding: VolumeBinding) -> None:
        """
        Creates the directory with its parents. An existing directory is left alone.

        :param binding: Ownership requirement of the directory.
        :raises FilesystemError: Not retryable, a failed mkdir is fatal for the service.
        """
        try:
            os.makedirs(binding.host_path, mode=binding.mode, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"cannot create {binding.host_path}: {e}") from e
        self.logger.info("volume created", path=binding.host_path, service=binding.service)

    def foreign_entries(self, binding: VolumeBinding, limit: int = 5) -> List[str]:
        """
        Entries below the directory owned by a uid other than the required one.

        :param limit: Stop after this many are found.
        """
        found: List[str] = []
        for root, dirs, files in os.walk(binding.host_path):
            for name in dirs + files:
                path = os.path.join(root, name)
                try:
                    if os.lstat(path).st_uid != binding.uid:
                        found.append(path)
                except FileNotFoundError:
                    continue
                except OSError as e:
                    raise FilesystemError(
                        f"cannot inspect {path}: {e}", retryable=e.errno in TRANSIENT_ERRNOS
                    ) from e
                if len(found) >= limit:
                    return found
        return found

    def fix_ownership(self, binding: VolumeBinding) -> None:
        """
        Applies uid, gid and mode to the directory.

        Existing content owned by another uid is a conflict. With ``on_conflict: fail``
        nothing is changed and a non-retryable error is raised; with ``force`` the
        whole tree is chowned.

        :param binding: Ownership requirement of the directory.
        :raises FilesystemError: Retryable when the failure is a transient OS error.
        """
        path = binding.host_path
        if not os.path.isdir(path):
            raise FilesystemError(f"{path} does not exist")

        conflicts = self.foreign_entries(binding)
        if conflicts and binding.on_conflict == ConflictPolicy.FAIL:
            raise FilesystemError(
                f"{path} holds entries owned by other users ({', '.join(conflicts)}); "
                "set owner.on_conflict to 'force' to take them over"
            )

        try:
            if conflicts:
                self.logger.warning("rewriting ownership of existing data", path=path, uid=binding.uid)
                for root, dirs, files in os.walk(path):
                    for name in dirs + files:
                        os.chown(os.path.join(root, name), binding.uid, binding.gid, follow_symlinks=False)
            os.chown(path, binding.uid, binding.gid)
            os.chmod(path, binding.mode)
        except OSError as e:
            raise FilesystemError(
                f"cannot set owner {binding.uid}:{binding.gid} mode {oct(binding.mode)} on {path}: {e}",
                retryable=e.errno in TRANSIENT_ERRNOS,
            ) from e
        self.logger.info(
            "ownership fixed", path=path, uid=binding.uid, gid=binding.gid, mode=oct(binding.mode)
        )
