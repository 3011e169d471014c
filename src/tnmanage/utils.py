import logging
import sys
from pathlib import Path
from typing import Optional, TextIO, Union

from rich.console import Console

BYTE_UNIT = 1024
BYTE_PREFIXES = "KMGTPE"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class ConfirmationError(Exception):
    """Raised when the answer to a confirmation prompt could not be read."""
    pass


# --- Logging Setup ---
def setup_logging(debug: bool = False, log_file: Optional[Union[str, Path]] = None) -> logging.Logger:
    """
    Sets up logging for the tnmanage logger hierarchy.

    Console logging goes to stderr so it never mixes with command output.
    """
    logger = logging.getLogger('tnmanage')
    # Remove existing handlers to avoid duplicate logs if called multiple times
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if debug else logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.debug(f"Logging initialized (debug={debug}, log_file={log_file})")
    return logger


# --- Formatting ---
def format_bytes(num_bytes: int) -> str:
    """Converts a byte count to a human readable string, e.g. 1536 -> '1.5 KiB'."""
    if num_bytes < BYTE_UNIT:
        return f"{num_bytes} B"

    div, exp = BYTE_UNIT, 0
    n = num_bytes // BYTE_UNIT
    while n >= BYTE_UNIT and exp < len(BYTE_PREFIXES) - 1:
        div *= BYTE_UNIT
        exp += 1
        n //= BYTE_UNIT
    return f"{num_bytes / div:.1f} {BYTE_PREFIXES[exp]}iB"


# --- Prompts ---
def confirm(console: Console, prompt: str, stream: Optional[TextIO] = None) -> bool:
    """
    Asks a yes/no question and reads a single line of input.

    Only 'y' or 'yes' (any case, surrounding whitespace ignored) count as yes.

    Raises:
        ConfirmationError: If the input ends before a line could be read
    """
    stream = stream or sys.stdin
    try:
        answer = console.input(prompt, stream=stream)
    except OSError as e:
        raise ConfirmationError(f"failed to read confirmation: {e}") from e

    if not answer:
        raise ConfirmationError("failed to read confirmation: end of input")

    return answer.strip().lower() in ('y', 'yes')
