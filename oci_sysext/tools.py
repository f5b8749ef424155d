#!/usr/bin/env python3
"""
Blocking invocation of external tools and the append-only operations log
"""

import os
import shlex
import shutil
import logging
import subprocess
import time

from .errors import ExternalToolError, NotFoundError

logger = logging.getLogger(__name__)


class OperationsLog:
    """Append-only record of every rewrite and copy performed on a tree"""

    def __init__(self, path=None):
        self.path = path

    def record(self, action, *args):
        """Append one line describing an action; no-op when no path is configured"""
        if not self.path:
            return
        line = ' '.join([time.strftime('%Y-%m-%dT%H:%M:%S'), action] + [shlex.quote(str(a)) for a in args])
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(self.path, 'a') as f:
            f.write(line + '\n')


class CommandRunner:
    """Runs external commands to completion, capturing all output"""

    def __init__(self, operations_log=None):
        self.operations_log = operations_log or OperationsLog()

    def run(self, cmd, cwd=None, record=True):
        """
        Execute command and raise on non-zero exit

        Args:
            cmd: Command argument list
            cwd: Working directory
            record: Whether to append the command to the operations log

        Returns:
            str: Combined stdout and stderr output
        """
        logger.debug(f"Executing command: {' '.join(cmd)}")
        if record:
            self.operations_log.record('exec', *cmd)
        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except FileNotFoundError as e:
            raise NotFoundError(f"Command not found: {cmd[0]}") from e

        if result.returncode != 0:
            logger.error(f"Command execution failed: {' '.join(cmd)}")
            logger.error(f"Error code: {result.returncode}")
            logger.error(f"Error output: {result.stdout}")
            raise ExternalToolError(cmd, result.returncode, result.stdout)

        if result.stdout:
            logger.debug(f"Output: {result.stdout}")
        return result.stdout

    def check_dependencies(self, tools):
        """Return the subset of tools that are not installed"""
        missing = [tool for tool in tools if shutil.which(tool) is None]
        for tool in tools:
            if tool in missing:
                logger.error(f"✗ {tool} is not installed")
            else:
                logger.debug(f"✓ {tool} is installed")
        return missing
