import paramiko
import logging
import stat
from pathlib import Path
from paramiko.ssh_exception import AuthenticationException, NoValidConnectionsError, SSHException

from core.errors import ConnectivityError

logger = logging.getLogger(__name__)


class SFTPClient:
    def __init__(self, host, port, username, password=None, private_key_path=None, passphrase=None, timeout=30):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.private_key_path = private_key_path
        self.passphrase = passphrase
        self.timeout = timeout
        self.ssh_client = None
        self.sftp_client = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.disconnect()

    def load_private_key(self):
        """Load an RSA or Ed25519 private key from ``private_key_path``."""
        with open(self.private_key_path, "r") as f:
            key_data = f.read()

        if "ED25519" in key_data or "OPENSSH" in key_data:
            key = paramiko.Ed25519Key.from_private_key_file(self.private_key_path, password=self.passphrase)
        else:
            key = paramiko.RSAKey.from_private_key_file(self.private_key_path, password=self.passphrase)

        logger.info(f"Loaded private key: {self.private_key_path}")
        return key

    def connect(self):
        try:
            self.ssh_client = paramiko.SSHClient()
            # Unknown host keys are logged, never auto-added
            self.ssh_client.set_missing_host_key_policy(paramiko.WarningPolicy())

            connect_kwargs = {
                "hostname": self.host,
                "port": self.port,
                "username": self.username,
                "timeout": self.timeout,
            }
            if self.private_key_path:
                connect_kwargs["pkey"] = self.load_private_key()
                connect_kwargs["look_for_keys"] = False
                connect_kwargs["allow_agent"] = False
            else:
                connect_kwargs["password"] = self.password

            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()

            logger.info(f"Connected to SFTP server {self.host}:{self.port}")
            return True

        except AuthenticationException as e:
            logger.error(f"SFTP authentication failed for {self.username}@{self.host}: {e}")
            raise ConnectivityError(f"SFTP authentication failed: {e}") from e
        except (NoValidConnectionsError, SSHException, OSError) as e:
            logger.error(f"SFTP connection failed: {e}")
            raise ConnectivityError(f"SFTP connection to {self.host}:{self.port} failed: {e}") from e

    def disconnect(self):
        try:
            if self.sftp_client:
                self.sftp_client.close()
            if self.ssh_client:
                self.ssh_client.close()
        except Exception as e:
            logger.warning(f"Error while closing SFTP connection to {self.host}: {e}")
        finally:
            self.sftp_client = None
            self.ssh_client = None

    def list_files(self, remote_dir):
        """Return ``SFTPAttributes`` for regular files in ``remote_dir``."""
        try:
            entries = self.sftp_client.listdir_attr(remote_dir)
        except (IOError, SSHException) as e:
            logger.error(f"Failed to list files in {remote_dir}: {e}")
            raise ConnectivityError(f"Failed to list {remote_dir}: {e}") from e

        files = [e for e in entries if e.st_mode is None or not stat.S_ISDIR(e.st_mode)]
        logger.info(f"Found {len(files)} files in {remote_dir}")
        for f in files:
            logger.debug(f"  - {f.filename}")
        return files

    def download_file(self, remote_path, local_path):
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self.sftp_client.get(remote_path, local_path)
        except (IOError, SSHException) as e:
            logger.error(f"Failed to download {remote_path}: {e}")
            raise ConnectivityError(f"Failed to download {remote_path}: {e}") from e

        file_size = Path(local_path).stat().st_size
        logger.info(f"Downloaded {remote_path} ({file_size} bytes)")
        return local_path
