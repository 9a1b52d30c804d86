"""
Terminal interaction helpers: prompts and the progress line.
"""
import sys
from typing import Callable, List, Optional, TypeVar


T = TypeVar('T')


def format_bytes(num_bytes: float) -> str:
    """Human readable byte count (binary units)."""
    value = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(value) < 1024 or unit == "TB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


def format_duration(seconds: Optional[float]) -> str:
    """Format seconds as H:MM:SS, '--:--' when unknown."""
    if seconds is None:
        return "--:--"
    seconds = int(seconds)
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}"


def prompt_choice(
    message: str,
    options: List[T],
    display_func: Optional[Callable[[T], str]] = None,
) -> T:
    """
    Ask the user to pick one option by number.

    Args:
        message: Question shown above the options
        options: Options to choose from
        display_func: Converts an option to its display string

    Returns:
        The chosen option
    """
    if not options:
        raise ValueError("No options provided for selection")

    display_func = display_func or str

    print(f"\n{message}")
    for i, option in enumerate(options, 1):
        print(f"  {i}. {display_func(option)}")

    while True:
        try:
            idx = int(input("\nEnter choice number: ")) - 1
        except ValueError:
            print("Please enter a valid number")
            continue
        except (KeyboardInterrupt, EOFError):
            print("\nOperation cancelled by user")
            sys.exit(1)

        if 0 <= idx < len(options):
            return options[idx]
        print(f"Please enter a number between 1 and {len(options)}")


def prompt_yes_no(message: str, default: bool = False) -> bool:
    """
    Ask a yes/no question.

    Args:
        message: Question to ask
        default: Answer used for an empty response

    Returns:
        True for yes, False for no
    """
    prompt_str = f"{message} {'[Y/n]' if default else '[y/N]'}: "

    while True:
        try:
            response = input(prompt_str).strip().lower()
        except (KeyboardInterrupt, EOFError):
            print("\nOperation cancelled by user")
            sys.exit(1)

        if not response:
            return default
        if response.startswith('y'):
            return True
        if response.startswith('n'):
            return False
        print("Please enter 'yes' or 'no'")


def display_progress(
    current: int,
    total: int,
    message: str = "",
    width: int = 40,
    bytes_done: Optional[int] = None,
    eta_seconds: Optional[float] = None,
) -> None:
    """
    Redraw a single-line progress bar.

    Args:
        current: Chunks finished
        total: Chunks in the profile
        message: Label shown before the bar
        width: Bar width in characters
        bytes_done: Bytes copied so far, shown when given
        eta_seconds: Remaining time estimate, shown when bytes_done is given
    """
    progress = min(1.0, current / total if total > 0 else 1.0)
    filled_width = int(width * progress)
    bar = '█' * filled_width + '-' * (width - filled_width)

    line = f"\r{message} [{bar}] {progress * 100:.1f}% ({current}/{total})"
    if bytes_done is not None:
        line += f" {format_bytes(bytes_done)} ETA {format_duration(eta_seconds)}"

    sys.stdout.write(line)
    sys.stdout.flush()

    if current >= total:
        sys.stdout.write('\n')
