"""Fork provider backends.

A provider creates, deletes and lists zero-copy forks of the main database
service. The Tiger CLI provider shells out to ``tiger`` and reads fork
passwords from the ``.pgpass`` file the CLI maintains.
"""

import asyncio
import json
import os
import re
from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import quote, urlsplit

import structlog

from ..exceptions import ForkProviderError
from ..schemas.fork import ProvisionedFork

logger = structlog.get_logger(__name__)

_SERVICE_ID_RE = re.compile(r"New Service ID:\s*([a-z0-9]+)", re.IGNORECASE)
_BARE_ID_RE = re.compile(r"\b([a-z0-9]{10})\b", re.IGNORECASE)


class ForkProvider(ABC):
    """Abstract fork-provisioning backend.

    All methods raise ForkProviderError on failure so callers can tell a
    failed call from a successful one.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique identifier for this provider."""
        ...

    @abstractmethod
    async def create(self, name: str) -> ProvisionedFork:
        """Create a fork of the main service.

        Args:
            name: Human-readable fork name (e.g., "universe-alpha")

        Returns:
            Fork id and connection descriptor
        """
        ...

    @abstractmethod
    async def delete(self, fork_id: str) -> None:
        """Tear down a fork."""
        ...

    @abstractmethod
    async def list_forks(self) -> list[str]:
        """List ids of forks of the main service."""
        ...


def parse_fork_id(output: str) -> str | None:
    """Extract the new service id from ``tiger service fork`` output.

    Example output: "New Service ID: hosdzr5zco"
    """
    match = _SERVICE_ID_RE.search(output)
    if match:
        return match.group(1)

    match = _BARE_ID_RE.search(output)
    return match.group(1) if match else None


def read_pgpass_password(
    path: str,
    host: str,
    port: int | str,
    database: str,
    user: str,
) -> str | None:
    """Look up a password in a .pgpass file.

    Lines are ``hostname:port:database:username:password``; ``*`` matches
    anything in the first four fields.
    """
    try:
        with open(os.path.expanduser(path), "r") as f:
            lines = f.read().splitlines()
    except OSError as e:
        logger.warning("Could not read .pgpass", path=path, error=str(e))
        return None

    wanted = (host, str(port), database, user)
    for line in lines:
        if not line or line.startswith("#"):
            continue
        fields = line.split(":", 4)
        if len(fields) != 5:
            continue
        if all(f == "*" or f == w for f, w in zip(fields[:4], wanted)):
            return fields[4]

    return None


class TigerCliProvider(ForkProvider):
    """Fork provider backed by the Tiger Cloud CLI."""

    def __init__(
        self,
        service_id: str,
        cli_path: str = "~/go/bin/tiger",
        fork_user: str = "tsdbadmin",
        pgpass_path: str = "~/.pgpass",
        command_timeout: float = 60.0,
        main_database_url: str | None = None,
    ):
        """Initialize the provider.

        Args:
            service_id: Id of the main service that forks are taken from
            cli_path: Path to the tiger binary
            fork_user: Database user for fork connections
            pgpass_path: .pgpass file the CLI writes fork passwords to
            command_timeout: Per-command timeout in seconds
            main_database_url: Main DSN, used to derive fork DSNs when the
                service listing lacks host details
        """
        self._service_id = service_id
        self._cli_path = os.path.expanduser(cli_path)
        self._fork_user = fork_user
        self._pgpass_path = pgpass_path
        self._command_timeout = command_timeout
        self._main_database_url = main_database_url

    @property
    def provider_name(self) -> str:
        return "tiger"

    async def create(self, name: str) -> ProvisionedFork:
        stdout = await self._run(
            "--password-storage", "pgpass",
            "service", "fork", self._service_id,
            "--name", name,
            "--now",
        )

        fork_id = parse_fork_id(stdout)
        if not fork_id:
            raise ForkProviderError(f"Could not parse fork id from CLI output for {name}")

        connection_descriptor = await self._connection_descriptor(fork_id)
        logger.info("Tiger fork created", fork_id=fork_id, name=name)

        return ProvisionedFork(id=fork_id, connection_descriptor=connection_descriptor)

    async def delete(self, fork_id: str) -> None:
        await self._run("service", "delete", fork_id, "--confirm")
        logger.info("Tiger fork deleted", fork_id=fork_id)

    async def list_forks(self) -> list[str]:
        services = await self._list_services()
        return [
            _service_id(s)
            for s in services
            if (s.get("parent_service_id") or s.get("parentServiceId")) == self._service_id
        ]

    async def _list_services(self) -> list[dict[str, Any]]:
        stdout = await self._run("--password-storage", "pgpass", "service", "list", "-o", "json")
        try:
            services = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise ForkProviderError(f"Invalid service list output: {e}") from e

        if not isinstance(services, list):
            raise ForkProviderError("Service list output is not a JSON array")
        return services

    async def _connection_descriptor(self, fork_id: str) -> str:
        services = await self._list_services()
        fork = next((s for s in services if _service_id(s) == fork_id), None)

        if fork and fork.get("host") and fork.get("port"):
            host, port = fork["host"], fork["port"]
            database = fork.get("database", "tsdb")
            password = read_pgpass_password(
                self._pgpass_path, host, port, database, self._fork_user
            )
            if password:
                return f"postgresql://{self._fork_user}:{quote(password, safe='')}@{host}:{port}/{database}"

            logger.warning("No .pgpass entry for fork", fork_id=fork_id, host=host)
            return f"postgresql://{self._fork_user}@{host}:{port}/{database}"

        if self._main_database_url:
            # Fork hosts follow the main host with the service id swapped
            main_host = urlsplit(self._main_database_url).hostname or ""
            fork_host = main_host.replace(self._service_id, fork_id)
            return self._main_database_url.replace(main_host, fork_host, 1)

        raise ForkProviderError(f"No connection details for fork {fork_id}")

    async def _run(self, *args: str) -> str:
        """Run a CLI command and return its stdout."""
        command = " ".join(("tiger",) + args)
        try:
            proc = await asyncio.create_subprocess_exec(
                self._cli_path,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ForkProviderError(f"Could not start tiger CLI: {e}", command=command) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._command_timeout
            )
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ForkProviderError(
                f"tiger CLI timed out after {self._command_timeout}s", command=command
            ) from e
        except asyncio.CancelledError:
            proc.kill()
            await asyncio.shield(proc.wait())
            raise

        if stderr:
            logger.debug("tiger CLI stderr", command=command, stderr=stderr.decode(errors="replace"))

        if proc.returncode != 0:
            raise ForkProviderError(
                f"tiger CLI exited with {proc.returncode}: {stderr.decode(errors='replace').strip()}",
                command=command,
            )

        return stdout.decode()


def _service_id(service: dict[str, Any]) -> str:
    return service.get("service_id") or service.get("id") or ""
