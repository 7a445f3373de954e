import collections.abc
import os
import sys
import tempfile
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from time import monotonic, sleep
from typing import Any, Callable, Union, Iterator, TypeVar

import emoji
from colors import *
from jinja2 import Environment, Template, StrictUndefined
from jinja2.exceptions import TemplateSyntaxError, UndefinedError

T = TypeVar('T')


class UserError(Exception):
    def __init__(self, message) -> None:
        super().__init__(message)
        self.message = message


class Logger(AbstractContextManager):
    _global_indent: int = 0

    def __init__(self, header: str = None, indent_amount: int = 6, spacious: bool = True) -> None:
        super().__init__()
        self._header: str = header
        self._indent_amount: int = indent_amount
        self._spacious: bool = spacious
        self._indent: int = Logger._global_indent
        self._line_ended: bool = True

    def __enter__(self) -> 'Logger':
        if self._header:
            self.info(self._header)
            if self._spacious:
                self.info('')

        Logger._global_indent += self._indent_amount
        self._indent: int = Logger._global_indent
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> Any:
        if self._spacious:
            self.info('')

        Logger._global_indent -= self._indent_amount
        self._indent: int = Logger._global_indent

        # returning None lets the exception propagate to the caller
        return None

    def _wrap_message(self, message: str, color: Callable[[str], str] = None) -> str:
        if color: message = color(message)
        lines: list = message.split('\n')
        if self._line_ended:
            return "\n".join([(' ' * self._indent) + emoji.emojize(line, language='alias') for line in lines])
        else:
            first_line = emoji.emojize(lines.pop(0), language='alias')
            rest_lines = "\n".join([emoji.emojize(line, language='alias') for line in lines])
            return first_line + rest_lines

    def info(self, message: str, newline: bool = True) -> None:
        print(self._wrap_message(message), file=sys.stdout, end='\n' if newline else '')
        sys.stdout.flush()
        self._line_ended: bool = newline

    def warn(self, message: str, newline: bool = True) -> None:
        print(self._wrap_message(message, yellow), file=sys.stdout, end='\n' if newline else '')
        sys.stdout.flush()
        self._line_ended: bool = newline

    def error(self, message: str, newline: bool = True) -> None:
        print(self._wrap_message(message, red), file=sys.stderr, end='\n' if newline else '')
        sys.stderr.flush()
        self._line_ended: bool = newline


def merge_into(target: dict, *args) -> dict:
    for source in args:
        for k, v in source.items():
            if k in target and isinstance(target[k], dict) and isinstance(source[k], collections.abc.Mapping):
                merge_into(target[k], source[k])
            else:
                target[k] = source[k]
    return target


def post_process(value: Any, context: dict) -> Any:

    def _evaluate(expr: str) -> Any:
        environment: Environment = Environment(undefined=StrictUndefined)
        try:
            if expr.startswith('{{') and expr.endswith('}}') and expr.find('{{') == expr.rfind('{{'):
                # line is a single expression (only one '{{' token at the beginning, and '}}' at the end)
                expr = expr[2:len(expr) - 2]
                result = environment.compile_expression(expr)(context)
                if result is None:
                    raise UserError(f"expression error: '{expr}' yielded an undefined result")
                return result
            elif expr.find('{{') >= 0:
                # given string contains a jinja expression, use normal templating
                template: Template = environment.from_string(expr, globals=context)
                return template.render(context)
            else:
                return expr
        except TemplateSyntaxError as e:
            raise UserError(f"expression error in '{expr}': {e.message}") from e
        except UndefinedError as e:
            raise UserError(f"expression error: '{expr}' yielded an undefined result") from e

    def _post_process_config(value) -> Any:
        if isinstance(value, str):
            return _evaluate(value)

        elif isinstance(value, dict):
            copy: dict = {}
            for k, v in value.items():
                copy[k] = _post_process_config(value=v)
            return copy
        elif isinstance(value, list):
            copy: list = []
            for item in value:
                copy.append(_post_process_config(value=item))
            return copy
        else:
            return value

    return _post_process_config(value=value)


class DeadlineExceeded(TimeoutError):
    """Raised when an operation is attempted (or still running) after its deadline passed."""


class Deadline:
    """A point in (monotonic) time after which an operation must give up.

    Deadlines are handed down from the CLI to every component so that a whole provisioning run has a bounded
    worst-case latency: each blocking call clamps its own timeout to whatever the deadline has left."""

    def __init__(self, seconds: float, clock: Callable[[], float] = monotonic) -> None:
        super().__init__()
        self._clock: Callable[[], float] = clock
        self._expires_at: float = clock() + seconds
        self._cancelled: bool = False

    @property
    def remaining(self) -> float:
        if self._cancelled:
            return 0.0
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining <= 0

    def cancel(self) -> None:
        self._cancelled = True

    def clamp(self, timeout: float) -> float:
        return min(timeout, self.remaining)

    def sub(self, seconds: float) -> 'Deadline':
        return Deadline(self.clamp(seconds), clock=self._clock)


def poll(fetch: Callable[[], T],
         is_done: Callable[[T], bool],
         deadline: Deadline,
         interval: float = 0.5,
         max_interval: float = 5.0,
         factor: float = 2.0,
         sleeper: Callable[[float], None] = sleep) -> T:
    """Repeatedly invokes 'fetch' until 'is_done' accepts its result, backing off exponentially between attempts.

    Raises DeadlineExceeded once the deadline passes (or is cancelled) without an accepted result. The deadline is
    checked again after every back-off, so 'fetch' is never invoked once it has passed."""
    while True:
        result: T = fetch()
        if is_done(result):
            return result
        sleeper(deadline.clamp(interval))
        if deadline.expired:
            raise DeadlineExceeded(f"timed out after polling until deadline")
        interval = min(interval * factor, max_interval)


@contextmanager
def atomic_write(path: Union[str, Path], mode: int = 0o644) -> Iterator:
    """Opens a temporary sibling of 'path' for binary writing, and renames it over 'path' only if the block succeeds.

    Readers therefore never observe a partially-written file."""
    path: Path = Path(path)
    os.makedirs(str(path.parent), exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix='.tmp', dir=str(path.parent))
    try:
        with os.fdopen(fd, 'wb') as f:
            os.fchmod(f.fileno(), mode)
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, str(path))
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def console() -> Logger:
    """Provides a logger that writes at the indentation level of the innermost active 'Logger' section."""
    return Logger(indent_amount=0, spacious=False)
