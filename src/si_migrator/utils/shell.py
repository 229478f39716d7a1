"""Shell script execution for external tooling (cf, bosh, om, mysql)."""

import asyncio
import os
import sys
import tempfile
from typing import Dict, List, Optional, TextIO

from loguru import logger
from pydantic import BaseModel, Field


class CommandError(Exception):
    """External command exited with a non-zero status."""

    def __init__(self, message: str, result: Optional['CommandResult'] = None):
        super().__init__(message)
        self.result = result


class CommandTimeoutError(CommandError):
    """External command exceeded its timeout and was killed."""

    pass


class CommandResult(BaseModel):
    """Outcome of one script execution."""

    output: str = Field(default='', description='Captured standard output')
    error_output: str = Field(default='', description='Captured standard error')
    exit_code: Optional[int] = Field(default=None, description='Process exit code')
    dry_run: bool = Field(default=False, description='Script was only printed')

    @property
    def success(self) -> bool:
        return self.dry_run or self.exit_code == 0


class ShellExecutor:
    """Runs bash scripts with a timeout, killing them on timeout or cancel."""

    def __init__(
        self,
        dry_run: bool = False,
        debug: bool = False,
        timeout: float = 0,
        output: Optional[TextIO] = None,
    ):
        """Initialize shell executor.

        Args:
            dry_run: Print scripts instead of running them
            debug: Log script input and output
            timeout: Seconds before a script is killed, 0 disables the limit
            output: Stream dry-run scripts are printed to
        """
        if timeout < 0:
            raise ValueError('timeout cannot be less than 0')

        self.dry_run = dry_run
        self.debug = debug
        self.timeout = timeout
        self.output = output or sys.stdout
        self.logger = logger.bind(component='ShellExecutor')

    async def execute(
        self,
        lines: List[str],
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Execute script lines with /bin/bash.

        Args:
            lines: Script lines, joined with newlines
            env: Extra environment variables for the script
            timeout: Override for the executor timeout

        Returns:
            Command result

        Raises:
            CommandTimeoutError: If the script runs longer than the timeout
            CommandError: If the script exits with a non-zero status
        """
        script = '\n'.join(lines)
        if not script.strip():
            raise CommandError('no input data to execute, script is empty')

        if self.debug:
            self.logger.debug(f'Command input: {script}')

        if self.dry_run:
            print(script, file=self.output)
            return CommandResult(dry_run=True)

        fd, script_path = tempfile.mkstemp(prefix='si-migrator-', suffix='.sh')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(script + '\n')

            return await self._run(script_path, env, timeout)
        finally:
            try:
                os.remove(script_path)
            except OSError as e:
                self.logger.error(f'Failed to remove {script_path} after executing: {e}')

    async def _run(
        self,
        script_path: str,
        env: Optional[Dict[str, str]],
        timeout: Optional[float],
    ) -> CommandResult:
        limit = self.timeout if timeout is None else timeout
        process_env = dict(os.environ)
        if env:
            process_env.update(env)

        process = await asyncio.create_subprocess_exec(
            '/bin/bash',
            script_path,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=process_env,
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=limit or None
            )
        except asyncio.TimeoutError:
            await self._kill(process)
            raise CommandTimeoutError(f'command timed out after {limit} seconds')
        except asyncio.CancelledError:
            self.logger.warning('Command was cancelled, terminating process')
            await self._kill(process)
            raise

        result = CommandResult(
            output=stdout.decode() if stdout else '',
            error_output=stderr.decode() if stderr else '',
            exit_code=process.returncode,
        )

        if self.debug:
            self.logger.debug(f'Command output: {result.output}')

        if process.returncode != 0:
            message = result.error_output.strip() or result.output.strip() or 'unknown error'
            raise CommandError(
                f'command exited with status {process.returncode}: {message}',
                result=result,
            )

        return result

    @staticmethod
    async def _kill(process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

