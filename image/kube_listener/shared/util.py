# ---------------------------------------------------------------------------- #

from __future__ import annotations

from datetime import datetime
from sys import stderr
from typing import Optional

# ---------------------------------------------------------------------------- #


def log(obj: object) -> None:
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")
    print(f"\033[36m[{now}]\033[0m {obj}", file=stderr, flush=True)


def error_full_message(error: BaseException) -> str:
    """Combine the messages of an error and of the errors that caused it into a
    single string of the form "error: cause 1: cause 2: root cause".

    Causes set with `raise ... from ...` take precedence over the implicit
    exception context. Causes with an empty message are skipped.
    """

    messages = [str(error) or type(error).__name__]

    cause = _cause_of(error)

    while cause is not None:

        message = str(cause)

        if message:
            messages.append(message)

        cause = _cause_of(cause)

    return ": ".join(messages)


def _cause_of(error: BaseException) -> Optional[BaseException]:

    if error.__cause__ is not None or error.__suppress_context__:
        return error.__cause__

    return error.__context__


# ---------------------------------------------------------------------------- #
