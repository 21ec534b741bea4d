"""
lxmigrate: container checkpoint/restore orchestration on top of CRIU.

- `config.py`: environment-driven settings
- `errors.py`: failure taxonomy reported through `OperationResult`
- `models.py`: requests, results and the tty identity
- `engine/`: engine options and the CLI/libcriu transports
- `images.py`: image directory lifecycle and the `tty.info` sidecar
- `externals.py`: tty and mount declarations that cross the checkpoint boundary
- `rootfs.py`: bind-mounted root used during restore
- `driver.py`: checkpoint/restore sequencing
- `archive.py`: tarball packing of image directories
- `api.py` / `cli.py`: HTTP and command-line surfaces
"""

from migration.driver import MigrationDriver
from migration.models import CheckpointRequest, OperationResult, RestoreRequest

__all__ = ["CheckpointRequest", "MigrationDriver", "OperationResult", "RestoreRequest"]
