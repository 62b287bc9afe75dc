"""
Command resolution for batch scripts.

Turns a script path and a raw parameter string into an argv list, picking
an interpreter from the file extension and the host platform.
"""

import logging
import os
import stat
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

from ..exceptions import ScriptNotFound


logger = logging.getLogger(__name__)


GIT_BASH_PATHS = (
    r"C:\Program Files\Git\bin\bash.exe",
    r"C:\Program Files (x86)\Git\bin\bash.exe",
)

_UNIX_PREFIXES = ("linux", "darwin", "freebsd", "openbsd", "netbsd", "sunos", "aix", "cygwin")


def is_windows(platform: Optional[str] = None) -> bool:
    return (platform or sys.platform).startswith("win")


def is_unix(platform: Optional[str] = None) -> bool:
    return (platform or sys.platform).startswith(_UNIX_PREFIXES)


def is_wsl_available() -> bool:
    """Check whether Windows Subsystem for Linux answers ``wsl --version``."""
    try:
        result = subprocess.run(["wsl", "--version"], capture_output=True, timeout=10)
        return result.returncode == 0
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"WSL is not available: {e}")
        return False


def find_git_bash() -> Optional[str]:
    for candidate in GIT_BASH_PATHS:
        if Path(candidate).exists():
            return candidate
    return None


def ensure_executable(script: Path) -> None:
    """Try to set the executable bit; failure is logged and ignored."""
    if os.access(script, os.X_OK):
        return

    logger.info(f"Script file is not executable, setting executable permission: {script}")
    try:
        mode = script.stat().st_mode
        script.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    except OSError as e:
        # Some filesystems have no executable bit; the interpreter launch still works
        logger.warning(f"Failed to set executable permission for {script}: {e}")


def split_parameters(parameters: Optional[str]) -> List[str]:
    """Whitespace-tokenize a raw parameter string."""
    if parameters is None or not parameters.strip():
        return []
    return parameters.split()


def build_command(script_path: str, parameters: Optional[str] = None,
                  platform: Optional[str] = None) -> List[str]:
    """
    Build the argv used to launch a script.

    Args:
        script_path: Path to the script file
        parameters: Raw whitespace-separated argument string
        platform: Platform name in ``sys.platform`` form (default: host)

    Returns:
        Command list: interpreter/launcher, script, then arguments

    Raises:
        ScriptNotFound: If script_path does not reference an existing file
    """
    script = Path(script_path)
    if not script.is_file():
        raise ScriptNotFound(str(script_path))

    ensure_executable(script)

    if is_unix(platform):
        command = _unix_command(str(script_path))
    elif is_windows(platform):
        command = _windows_command(str(script_path))
    else:
        logger.warning(f"Unknown operating system, attempting direct execution of: {script_path}")
        command = [str(script_path)]

    command.extend(split_parameters(parameters))

    logger.debug(f"Built command: {' '.join(command)}")
    return command


def _unix_command(script_path: str) -> List[str]:
    suffix = Path(script_path).suffix.lower()

    if suffix in (".sh", ""):
        return ["bash", script_path]
    if suffix == ".py":
        return [sys.executable or "python3", script_path]
    if suffix == ".pl":
        return ["perl", script_path]
    if suffix == ".rb":
        return ["ruby", script_path]
    return [script_path]


def _windows_command(script_path: str) -> List[str]:
    suffix = Path(script_path).suffix.lower()

    if suffix in (".bat", ".cmd"):
        return ["cmd.exe", "/c", script_path]
    if suffix == ".ps1":
        return ["powershell.exe", "-ExecutionPolicy", "Bypass", "-File", script_path]
    if suffix == ".py":
        return [sys.executable or "python", script_path]
    if suffix == ".sh":
        if is_wsl_available():
            return ["wsl", "bash", script_path]
        git_bash = find_git_bash()
        if git_bash:
            return [git_bash, "-c", script_path]
        logger.warning(
            f"No suitable shell found for .sh file on Windows. Direct execution will likely fail: {script_path}"
        )
    return [script_path]
