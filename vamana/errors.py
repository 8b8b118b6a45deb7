"""Exception type raised by the index and its file helpers."""


class ANNError(Exception):
    """An error raised by the index, carrying a numeric error code."""

    def __init__(self, message, error_code):
        super().__init__(message)
        self.message = str(message)
        self.error_code = int(error_code)

    def __str__(self):
        return self.message

    def __repr__(self):
        return f"ANNError({self.message!r}, {self.error_code})"