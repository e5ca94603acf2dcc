# errors.py


class BinaryVideoError(Exception):
    """Base class for every failure raised by the binary video codec."""


class ConfigError(BinaryVideoError):
    pass


class TranscodeError(BinaryVideoError):
    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


class MalformedStream(BinaryVideoError):
    """The decoded frames cannot be turned back into file data and an extension."""


class TrailerNotFound(MalformedStream):
    pass
