#!/usr/bin/env python3
"""
Error types raised by the sysext pipeline
Every stage raises one of these and lets it propagate; only the CLI catches them
"""


class SysextError(Exception):
    """Base class for all sysext pipeline errors"""


class NotFoundError(SysextError):
    """Missing manifest, layer archive, image or shared library"""


class ParseError(SysextError):
    """Malformed manifest, archive or configuration content"""


class InvalidArgumentError(SysextError):
    """Out-of-range skip count, unsupported filesystem kind and the like"""


class ExternalToolError(SysextError):
    """An invoked process exited non-zero"""

    def __init__(self, cmd, returncode, output='', context=None):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.output = output or ''
        message = f"Command failed (exit code {returncode}): {' '.join(self.cmd)}"
        if context:
            message = f"{context}: {message}"
        if self.output.strip():
            message += f"\n{self.output.strip()}"
        super().__init__(message)


class IOFailure(SysextError):
    """Filesystem operation error during extraction, symlink rewrite or copy"""
