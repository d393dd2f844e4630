"""Per-platform provider behavior.

One driver is selected at startup. It knows where the provider binary
lives, how to quote commands for the local shell, and which repairs
must happen before the VM is started on that platform.
"""
import base64
import os
import platform
import shlex
import subprocess
from pathlib import Path
from typing import Dict, Optional, Sequence

from mcp_local_engine.config import EngineSettings
from mcp_local_engine.errors import CommandError, ConfigurationError
from mcp_local_engine.logging import get_logger
from mcp_local_engine.providers.commands import Shell, run_command
from mcp_local_engine.retry import retry
from mcp_local_engine.types import RetryPolicy

logger = get_logger(__name__)

PROVIDER_DIR_ENV = "BOOT2DOCKER_DIR"
PROVIDER_BINARY = "boot2docker"
VBOXMANAGE = "VBoxManage"
WINDOWS_VBOXMANAGE = r"C:\Program Files\Oracle\VirtualBox\VBoxManage.exe"
WINDOWS_PROVIDER_BINARY = r"C:\Program Files\Boot2Docker for Windows\boot2docker.exe"
WINDOWS_GIT_BIN = r"C:\Program Files (x86)\Git\bin"


class ProviderDriver:
    """Base driver with POSIX defaults."""

    system = ""

    def __init__(self, settings: EngineSettings, shell: Shell = run_command):
        self.settings = settings
        self.shell = shell

    def default_binary(self) -> str:
        raise NotImplementedError

    @property
    def binary(self) -> str:
        return self.settings.provider_binary or self.default_binary()

    def quote(self, args: Sequence[str]) -> str:
        return shlex.join(args)

    def executable(self) -> str:
        """Provider invocation prefix, already quoted."""
        return self.quote([self.binary])

    def provider_command(self, args: Sequence[str]) -> str:
        return f"{self.executable()} {self.quote(args)}"

    def provider_env(self) -> Dict[str, str]:
        return {PROVIDER_DIR_ENV: str(self.settings.provider_root)}

    async def binary_installed(self) -> bool:
        """Whether the provider binary can be found."""
        try:
            output = await self.shell(self.quote(["which", self.binary]))
        except CommandError:
            return False
        return bool(output.strip())

    async def prepare_start(self, policy: RetryPolicy) -> None:
        """Repairs to run before starting a stopped VM."""

    def path_to_bind(self, path: str) -> str:
        """Host path as seen from inside the VM."""
        return path


class LinuxDriver(ProviderDriver):
    """Linux hosts need the home share added before first start."""

    system = "Linux"

    def default_binary(self) -> str:
        return str(self.settings.provider_root / "bin" / PROVIDER_BINARY)

    async def has_shared_folder(self) -> bool:
        output = await self.shell(
            self.quote([VBOXMANAGE, "showvminfo", self.settings.vm_name, "--machinereadable"])
        )
        mapping = "SharedFolderNameMachineMapping"
        return any(
            line.startswith(mapping) and line.split("=", 1)[-1].strip('"') == self.settings.share_name
            for line in output.splitlines()
        )

    async def prepare_start(self, policy: RetryPolicy) -> None:
        if await self.has_shared_folder():
            logger.debug("shared_folder_present", name=self.settings.share_name)
            return

        cmd = self.quote(
            [
                VBOXMANAGE,
                "sharedfolder",
                "add",
                self.settings.vm_name,
                "--name",
                self.settings.share_name,
                "--hostpath",
                self.settings.share_host_path,
            ]
        )

        async def share(counter: int) -> str:
            logger.info("sharing_folders", attempt=counter)
            return await self.shell(cmd)

        await retry(share, policy, "share_folders")

    def path_to_bind(self, path: str) -> str:
        return path.replace(self.settings.share_host_path, f"/{self.settings.share_name}", 1)


class DarwinDriver(ProviderDriver):
    """macOS hosts need no pre-start repair."""

    system = "Darwin"

    def default_binary(self) -> str:
        return str(Path("/usr/local/bin") / PROVIDER_BINARY)


class WindowsDriver(ProviderDriver):
    """Windows hosts need the host-only adapter pinned to a static address."""

    system = "Windows"

    def default_binary(self) -> str:
        return WINDOWS_PROVIDER_BINARY

    def quote(self, args: Sequence[str]) -> str:
        return subprocess.list2cmdline(list(args))

    def executable(self) -> str:
        return f'{self.quote([self.binary])} --hostip="{self.settings.host_only_ip}"'

    def provider_env(self) -> Dict[str, str]:
        env = super().provider_env()
        current = os.environ.get("Path", os.environ.get("PATH", ""))
        if not current.startswith(WINDOWS_GIT_BIN):
            env["Path"] = f"{WINDOWS_GIT_BIN};{current}"
        return env

    async def binary_installed(self) -> bool:
        return Path(self.binary).is_file()

    def path_to_bind(self, path: str) -> str:
        return path.replace("\\", "/").replace("C:/", "c:/").replace("c:/", "/c/")

    async def host_only_adapter(self) -> str:
        """Name of the VM's host-only network interface."""
        output = await self.shell(
            f'{self.quote([WINDOWS_VBOXMANAGE, "showvminfo", self.settings.vm_name])}'
            ' | findstr "Host-only"'
        )
        start, end = output.find("'"), output.rfind("'")
        if start == -1 or end <= start:
            raise CommandError("showvminfo", 0, output, "no host-only adapter found")
        adapter = output[start + 1:end].replace("Ethernet Adapter", "Network")
        logger.debug("windows_adapter", adapter=adapter)
        return adapter

    async def is_host_only_set(self) -> bool:
        adapter = await self.host_only_adapter()
        output = await self.shell("netsh interface ipv4 show addresses")
        section = output[output.find(f'Configuration for interface "{adapter}"'):]
        section = section[: section.find("Subnet Prefix")] if "Subnet Prefix" in section else section
        is_set = self.settings.host_only_ip in section
        logger.debug("adapter_set_correctly", adapter=adapter, is_set=is_set)
        return is_set

    async def set_host_only(self) -> None:
        adapter = await self.host_only_adapter()
        cmd = (
            f'netsh interface ipv4 set address name="{adapter}" '
            f"static {self.settings.host_only_ip} store=persistent"
        )
        logger.info("setting_adapter", adapter=adapter, ip=self.settings.host_only_ip)
        await self.shell(elevated(cmd))

    async def prepare_start(self, policy: RetryPolicy) -> None:
        async def repair(counter: int) -> None:
            if await self.is_host_only_set():
                return
            logger.info("repairing_host_only_adapter", attempt=counter)
            await self.set_host_only()
            if not await self.is_host_only_set():
                raise CommandError("netsh", 1, "", "host-only adapter address did not stick")

        await retry(repair, policy, "repair_host_only_adapter")


def elevated(cmd: str) -> str:
    """Wrap a cmd.exe command so it runs with administrator rights."""
    escaped = cmd.replace("'", "''")
    script = f"Start-Process -FilePath cmd.exe -ArgumentList '/c {escaped}' -Verb RunAs -Wait"
    encoded = base64.b64encode(script.encode("utf-16-le")).decode("ascii")
    return f"powershell -NoProfile -NonInteractive -EncodedCommand {encoded}"


DRIVERS: Dict[str, type] = {
    driver.system: driver for driver in (LinuxDriver, DarwinDriver, WindowsDriver)
}


def select_driver(
    settings: EngineSettings,
    shell: Shell = run_command,
    system: Optional[str] = None,
) -> ProviderDriver:
    """Pick the driver for the current (or given) operating system."""
    system = system or platform.system()
    driver = DRIVERS.get(system)
    if driver is None:
        raise ConfigurationError(
            f"Unsupported operating system: {system}",
            details={"supported": sorted(DRIVERS)},
        )
    logger.debug("driver_selected", system=system)
    return driver(settings, shell)
