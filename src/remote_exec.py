"""
Operator-only remote execution channel.

Server credentials are stored with their secret fields sealed by AES-GCM
under the operator master key. Only an exact member of the diagnostic
allow-list can be executed, and every attempt is written to the credential
access log.
"""

import asyncio
import base64
import json
import logging
import os
import tempfile
import time
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy.ext.asyncio import AsyncSession

import repository
from config import settings
from errors import (
    AuthorizationError,
    CommandNotAllowedError,
    ConfigurationError,
    IPTVError,
    NotFoundError,
)
from models import ServerActionRequest, ServerCredentials
from orm import Profile, StreamingServer

logger = logging.getLogger(__name__)

ALLOWED_COMMANDS = frozenset([
    "systemctl status nginx",
    "df -h",
    "free -m",
    "uptime",
    "ps aux | grep nginx",
    "netstat -tlnp",
    "ffmpeg -version",
    "ffmpeg -encoders",
    "ffmpeg -decoders",
    "ps aux | grep ffmpeg",
])

LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")
SECRET_FIELDS = ("password", "private_key")
IV_LENGTH = 12


def derive_key(master_key: str) -> bytes:
    """Master secret right-padded with '0' and cut to 32 bytes."""
    return master_key.ljust(32, "0")[:32].encode("utf-8")[:32]


class CredentialVault:
    def __init__(self, master_key: Optional[str] = None):
        self.master_key = master_key if master_key is not None else settings.SERVER_MASTER_KEY

    def _cipher(self) -> AESGCM:
        if not self.master_key:
            raise ConfigurationError("Master encryption key not configured")
        return AESGCM(derive_key(self.master_key))

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._cipher().encrypt(iv, plaintext.encode("utf-8"), None)
        return base64.b64encode(iv + sealed).decode("ascii")

    def decrypt(self, token: str) -> str:
        cipher = self._cipher()
        try:
            raw = base64.b64decode(token)
            return cipher.decrypt(raw[:IV_LENGTH], raw[IV_LENGTH:], None).decode("utf-8")
        except (InvalidTag, ValueError) as e:
            raise ConfigurationError("Stored credentials cannot be decrypted with the configured key") from e

    def seal(self, credentials: Dict[str, Any]) -> str:
        """JSON document with secret fields encrypted individually."""
        document = {k: v for k, v in credentials.items() if k not in SECRET_FIELDS}
        for field in SECRET_FIELDS:
            if credentials.get(field):
                document[field] = self.encrypt(str(credentials[field]))
        return json.dumps(document)

    def unseal(self, stored: str) -> Dict[str, Any]:
        try:
            document = json.loads(stored)
        except ValueError as e:
            raise ConfigurationError("Stored credentials are not a valid document") from e
        for field in SECRET_FIELDS:
            if document.get(field):
                document[field] = self.decrypt(document[field])
        return document


def is_command_allowed(command: Optional[str]) -> bool:
    return command is not None and command in ALLOWED_COMMANDS


class RemoteExecutionService:
    def __init__(self, vault: Optional[CredentialVault] = None,
                 timeout: Optional[float] = None, max_output: Optional[int] = None):
        self.vault = vault or CredentialVault()
        self.timeout = timeout if timeout is not None else settings.REMOTE_EXEC_TIMEOUT
        self.max_output = max_output if max_output is not None else settings.REMOTE_EXEC_MAX_OUTPUT

    async def handle(
        self,
        db: AsyncSession,
        actor: Profile,
        request: ServerActionRequest,
        client_ip: Optional[str],
        user_agent: Optional[str],
    ) -> Dict[str, Any]:
        """Run one action and audit it, whatever the outcome."""
        # A rollback expires the actor, so read what the audit row needs first
        audit = dict(actor_id=actor.id, actor_name=actor.username,
                     client_ip=client_ip, user_agent=user_agent)
        try:
            if not actor.is_admin:
                raise AuthorizationError("Admin access required")
            data = await self._dispatch(db, request)
        except IPTVError as e:
            await self._audit(db, request, success=False, error_message=e.message, **audit)
            raise
        except Exception as e:
            logger.error(f"Server {request.action} on {request.server_id} crashed: {e}")
            await db.rollback()
            await self._audit(db, request, success=False,
                              error_message=f"{e.__class__.__name__}: {e}", **audit)
            raise
        await self._audit(db, request, success=True, error_message=None, **audit)
        return {"success": True, "data": data}

    async def _audit(self, db, request, actor_id, actor_name, client_ip, user_agent, success, error_message):
        await repository.add_credential_access_log(
            db,
            server_id=request.server_id,
            accessed_by=actor_id,
            access_type=request.action,
            ip_address=client_ip,
            user_agent=user_agent,
            success=success,
            error_message=error_message,
        )
        logger.info(
            f"Server {request.action} by {actor_name} on {request.server_id}: "
            f"{'ok' if success else 'failed'}")

    async def _dispatch(self, db: AsyncSession, request: ServerActionRequest) -> Any:
        server = await repository.get_server(db, request.server_id)
        if server is None:
            raise NotFoundError("Server not found")

        if request.action == "store":
            return await self.store(db, server, request.credentials)
        if request.action == "retrieve":
            return self.retrieve(server)
        if request.action == "test_connection":
            return await self.test_connection(server)
        return await self.execute_command(server, request.command)

    async def store(self, db: AsyncSession, server: StreamingServer, credentials: ServerCredentials) -> Dict[str, Any]:
        server.encrypted_credentials = self.vault.seal(credentials.model_dump(exclude_none=True))
        server.ssh_username = credentials.username
        if credentials.port:
            server.ssh_port = credentials.port
        await db.commit()
        return {"message": "Credentials stored"}

    def retrieve(self, server: StreamingServer) -> Optional[Dict[str, Any]]:
        if not server.encrypted_credentials:
            return None
        return self.vault.unseal(server.encrypted_credentials)

    async def test_connection(self, server: StreamingServer) -> Dict[str, Any]:
        """TCP connect to the SSH port and read the server banner."""
        host = server.ip_address or server.hostname
        started = time.monotonic()
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, server.ssh_port), timeout=self.timeout)
        except (OSError, asyncio.TimeoutError) as e:
            return {"connected": False, "message": f"Connection failed: {e.__class__.__name__}"}
        latency_ms = round((time.monotonic() - started) * 1000, 1)
        banner = ""
        try:
            line = await asyncio.wait_for(reader.readline(), timeout=self.timeout)
            banner = line.decode("utf-8", errors="replace").strip()
        except (OSError, asyncio.TimeoutError):
            pass
        finally:
            writer.close()
        return {"connected": True, "latency_ms": latency_ms, "banner": banner,
                "message": "Connection test successful"}

    async def execute_command(self, server: StreamingServer, command: Optional[str]) -> Dict[str, Any]:
        if not is_command_allowed(command):
            raise CommandNotAllowedError(f"Command not allowed: {command}")

        if server.hostname in LOCAL_HOSTS:
            try:
                process = await asyncio.create_subprocess_shell(
                    command, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE)
            except OSError as e:
                raise ConfigurationError(f"Cannot start local shell: {e}") from e
            return await self._run(process)

        credentials = self.retrieve(server)
        if not credentials:
            raise NotFoundError("No credentials found for server")
        if not credentials.get("private_key"):
            raise ConfigurationError("Command execution requires a stored private key")

        key_file = tempfile.NamedTemporaryFile("w", delete=False, prefix="srvkey_")
        try:
            os.chmod(key_file.name, 0o600)
            key_file.write(credentials["private_key"])
            key_file.close()
            try:
                process = await asyncio.create_subprocess_exec(
                    "ssh",
                    "-o", "BatchMode=yes",
                    "-o", "StrictHostKeyChecking=accept-new",
                    "-o", f"ConnectTimeout={int(self.timeout)}",
                    "-i", key_file.name,
                    "-p", str(server.ssh_port),
                    f"{credentials['username']}@{server.ip_address or server.hostname}",
                    command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                raise ConfigurationError(f"Cannot start ssh client: {e}") from e
            return await self._run(process)
        finally:
            os.unlink(key_file.name)

    async def _run(self, process: asyncio.subprocess.Process) -> Dict[str, Any]:
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return {"exit_code": None, "stdout": "", "stderr": "Command timed out"}
        return {
            "exit_code": process.returncode,
            "stdout": stdout.decode("utf-8", errors="replace")[:self.max_output],
            "stderr": stderr.decode("utf-8", errors="replace")[:self.max_output],
        }
