"""
Guest access: wait for an IP, prepare SSH credentials, run provisioning
commands and shut the guest down.
"""

import io
import logging
import shlex
import time
from typing import Optional, Tuple

import paramiko

from vsphere_builder.config import CommunicatorConfig, ProvisionConfig, ShutdownConfig, WaitIPConfig
from vsphere_builder.errors import ProvisionError, WaitTimeoutError
from vsphere_builder.pipeline import (
    STATE_IP,
    STATE_SSH_PRIVATE_KEY,
    STATE_SSH_PUBLIC_KEY,
    STATE_VM,
    BuildContext,
    StateBag,
    Step,
    StepAction,
)

logger = logging.getLogger(__name__)

SSH_RETRY_INTERVAL = 5.0
SSH_KEY_BITS = 2048


class StepWaitForIP(Step):
    """Wait for an address and keep it only once it has been stable for the settle period."""

    name = "wait-for-ip"

    def __init__(self, config: WaitIPConfig):
        self.config = config

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        vm = state.require(STATE_VM)
        network = self.config.ip_wait_address or None
        deadline = time.time() + self.config.ip_wait_timeout

        logger.info("Waiting for IP...")
        while True:
            ip = vm.wait_for_ip(ctx, max(deadline - time.time(), 0), network)
            if ip is None:
                return StepAction.HALT
            if self.config.ip_settle_timeout <= 0:
                break
            if ctx.wait(self.config.ip_settle_timeout):
                return StepAction.HALT
            if ip in vm.guest_ips():
                break
            logger.info(f"IP {ip} changed during settle period, waiting again")

        logger.info(f"IP address: {ip}")
        state.put(STATE_IP, ip)
        return StepAction.CONTINUE


def generate_key_pair() -> Tuple[str, str]:
    """Return ``(private_pem, authorized_keys_line)`` for a fresh RSA key."""
    key = paramiko.RSAKey.generate(SSH_KEY_BITS)
    buf = io.StringIO()
    key.write_private_key(buf)
    return buf.getvalue(), f"{key.get_name()} {key.get_base64()} vsphere-builder"


class StepSSHKeyPair(Step):
    name = "ssh-key-pair"

    def __init__(self, config: CommunicatorConfig):
        self.config = config

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        if self.config.type != "ssh" or self.config.ssh_password or self.config.ssh_private_key_file:
            return StepAction.CONTINUE

        logger.info("Creating temporary SSH key pair...")
        private_key, public_key = generate_key_pair()
        state.put(STATE_SSH_PRIVATE_KEY, private_key)
        state.put(STATE_SSH_PUBLIC_KEY, public_key)

        logger.info("Adding SSH public key to the VM...")
        state.require(STATE_VM).add_public_keys(public_key)
        return StepAction.CONTINUE


def ssh_connect(config: CommunicatorConfig, state: StateBag, ctx: BuildContext) -> Optional[paramiko.SSHClient]:
    """Connect to the guest, retrying until ``ssh_timeout``.

    Returns None if the run is cancelled while waiting.

    Raises:
        ProvisionError: No address to connect to.
        WaitTimeoutError: The guest did not accept SSH in time.
    """
    host = config.ssh_host or state.get(STATE_IP)
    if not host:
        raise ProvisionError("no SSH host: set 'communicator.ssh_host' or wait for an IP")

    kwargs = {"username": config.ssh_username, "port": config.ssh_port, "timeout": 10}
    if config.ssh_password:
        kwargs["password"] = config.ssh_password
    if config.ssh_private_key_file:
        kwargs["key_filename"] = config.ssh_private_key_file
    private_key = state.get(STATE_SSH_PRIVATE_KEY)
    if private_key:
        kwargs["pkey"] = paramiko.RSAKey.from_private_key(io.StringIO(private_key))

    deadline = time.time() + config.ssh_timeout
    logger.info(f"Connecting to {host}:{config.ssh_port} over SSH...")
    while True:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(hostname=host, **kwargs)
            return client
        except (paramiko.SSHException, OSError) as e:
            client.close()
            logger.debug(f"SSH connection to {host} failed: {e}")
            if time.time() >= deadline:
                raise WaitTimeoutError(f"timeout waiting for SSH on {host} after {config.ssh_timeout:g}s: {e}") from e
        if ctx.wait(SSH_RETRY_INTERVAL):
            return None


def ssh_exec(client: paramiko.SSHClient, command: str) -> Tuple[str, str, int]:
    """Execute a command via SSH. Returns (stdout, stderr, exit_code)."""
    stdin, stdout, stderr = client.exec_command(command)
    exit_code = stdout.channel.recv_exit_status()
    return (
        stdout.read().decode().strip(),
        stderr.read().decode().strip(),
        exit_code,
    )


def with_environment(command: str, environment: dict) -> str:
    if not environment:
        return command
    exports = " ".join(f"{k}={shlex.quote(str(v))}" for k, v in sorted(environment.items()))
    return f"export {exports}; {command}"


class StepProvision(Step):
    name = "provision"

    def __init__(self, communicator: CommunicatorConfig, config: ProvisionConfig):
        self.communicator = communicator
        self.config = config

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        if not self.config.inline:
            return StepAction.CONTINUE

        client = ssh_connect(self.communicator, state, ctx)
        if client is None:
            return StepAction.HALT
        try:
            for command in self.config.inline:
                if ctx.cancelled:
                    return StepAction.HALT
                logger.info(f"Provisioning with shell command: {command}")
                out, err, exit_code = ssh_exec(client, with_environment(command, self.config.environment))
                for line in out.splitlines():
                    logger.info(f"    {line}")
                if exit_code != 0:
                    raise ProvisionError(f"command '{command}' exited with status {exit_code}: {err}")
        finally:
            client.close()
        return StepAction.CONTINUE


class StepShutdown(Step):
    name = "shutdown"

    def __init__(self, config: ShutdownConfig, communicator: CommunicatorConfig):
        self.config = config
        self.communicator = communicator

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        vm = state.require(STATE_VM)
        if vm.is_powered_off():
            logger.info("VM is already powered off")
            return StepAction.CONTINUE

        if self.config.disable_shutdown:
            logger.info("Automatic shutdown disabled. Please shutdown virtual machine.")
        elif self.config.shutdown_command and self.communicator.type == "ssh":
            logger.info("Executing shutdown command...")
            client = ssh_connect(self.communicator, state, ctx)
            if client is None:
                return StepAction.HALT
            try:
                # the connection may drop while the guest goes down
                client.exec_command(self.config.shutdown_command)
            except paramiko.SSHException as e:
                logger.debug(f"Shutdown command connection closed: {e}")
            finally:
                client.close()
        else:
            logger.info("Shutting down VM...")
            vm.start_shutdown()

        logger.debug(f"Waiting up to {self.config.shutdown_timeout:g}s for shutdown")
        if not vm.wait_for_shutdown(ctx, self.config.shutdown_timeout, self.config.shutdown_poll_interval):
            return StepAction.HALT
        logger.info("VM shut down")
        return StepAction.CONTINUE
