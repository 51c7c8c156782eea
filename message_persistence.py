import logging
import os
from pathlib import Path
from typing import Optional, Union

from config import Mqtt2FileConfig
from mqtt_subscriber import IncomingMessage


class PersistError(Exception):
    """Raised when a message payload cannot be written to disk."""


class MissingFilenameError(PersistError):
    """Raised when a message carries no file name user property."""


class UnsafeFilenameError(PersistError):
    """Raised when the file name would leave the target directory."""


def _target_path(directory: Path, filename: str) -> Path:
    separators = {os.sep, "/"} | ({os.altsep} if os.altsep else set())
    if filename in ("", ".", "..") or any(sep in filename for sep in separators):
        raise UnsafeFilenameError(f"Refusing to write to file name {filename!r}")
    return directory / filename


def persist(
    message: IncomingMessage,
    directory: Union[str, Path],
    filename_key: str = Mqtt2FileConfig.FILENAME_PROPERTY,
) -> Path:
    """Write the message payload to ``directory/<filename>``.

    The file name comes from the ``filename_key`` user property. An existing
    file of the same name is truncated and overwritten.

    Raises:
        MissingFilenameError: If the message has no file name property.
        UnsafeFilenameError: If the file name is not a plain file name.
        PersistError: If the file cannot be created or written.
    """
    filename = message.metadata.get(filename_key)
    if filename is None:
        raise MissingFilenameError(f"No {filename_key} in user-property (topic {message.topic})")
    path = _target_path(Path(directory), filename)
    try:
        path.write_bytes(message.payload)
    except OSError as exc:
        raise PersistError(f"Failed to write {path}: {exc}") from exc
    return path


class MessagePersistenceHandler:
    """Persists messages into one directory, reporting failures instead of raising."""

    def __init__(
        self,
        directory: Union[str, Path],
        filename_key: str = Mqtt2FileConfig.FILENAME_PROPERTY,
        logger: Optional[logging.Logger] = None,
    ):
        self.directory = Path(directory)
        self.filename_key = filename_key
        self.logger = logger or logging.getLogger(__name__)
        self.saved_count = 0
        self.failed_count = 0

    def __call__(self, message: IncomingMessage) -> bool:
        try:
            path = persist(message, self.directory, self.filename_key)
        except MissingFilenameError as exc:
            self.failed_count += 1
            self.logger.warning(f"Dropping message: {exc}")
            return False
        except PersistError as exc:
            self.failed_count += 1
            self.logger.error(f"Error handling message: {exc}")
            return False
        self.saved_count += 1
        self.logger.info(f"Saved message from {message.topic} to {path}")
        return True
