"""Provider VM lifecycle.

The provider is the virtual machine that hosts the container runtime.
Its state is never cached: every question is answered by probing the
VM through the provider binary. Flaky steps are retried with a bounded
policy, and two self-healing loops run on top of the retries: a VM that
comes up without an address gets one assigned over ssh, and a VM whose
address falls outside the reserved one is repaired and brought up again.
"""
from typing import List, Mapping, Optional, Sequence

from mcp_local_engine.config import EngineSettings
from mcp_local_engine.errors import CommandError, EngineError, ProviderError
from mcp_local_engine.events import EventBus
from mcp_local_engine.logging import get_logger
from mcp_local_engine.providers.drivers import ProviderDriver
from mcp_local_engine.providers.profile import read_profile, server_ips
from mcp_local_engine.retry import retry
from mcp_local_engine.types import EngineConfig, LifecycleEvent, ProviderState, RetryPolicy

logger = get_logger(__name__)

RUNNING_STATUS = "running"
DOWN_STATUSES = frozenset({"poweroff", "stopped", "saved", "aborted", "paused"})

# Phrases the provider prints when the VM booted without an address.
IP_UNASSIGNED_MARKERS = (
    "could not assign ip",
    "could not get ip",
    "unable to get ip",
    "no ip address",
    "error requesting ip",
)


def ip_unassigned(output: str) -> bool:
    lowered = output.lower()
    return any(marker in lowered for marker in IP_UNASSIGNED_MARKERS)


class Provider:
    """State machine driving the provider VM up and down."""

    name = "boot2docker"

    def __init__(self, settings: EngineSettings, driver: ProviderDriver, events: EventBus):
        self.settings = settings
        self.driver = driver
        self.events = events
        self._profile: Optional[Mapping[str, str]] = None
        self._engine_config: Optional[EngineConfig] = None

    def policy(self, max_attempts: Optional[int] = None) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max_attempts or self.settings.retry_attempts,
            delay=self.settings.retry_delay,
        )

    async def sh(self, args: Sequence[str]) -> str:
        """Run a provider sub-command and return its trimmed stdout."""
        return await self.driver.shell(
            self.driver.provider_command(args), self.driver.provider_env()
        )

    async def _retried(self, args: Sequence[str], policy: RetryPolicy, description: str) -> str:
        async def attempt(counter: int) -> str:
            logger.info(description, attempt=counter, max_attempts=policy.max_attempts)
            return await self.sh(args)

        return (await retry(attempt, policy, description)).strip()

    async def up(self, max_attempts: Optional[int] = None, disksize: Optional[int] = None) -> None:
        """Bring the VM up.

        disksize only has an effect when init creates the VM.
        """
        policy = self.policy(max_attempts)
        logger.info("provider_starting", max_attempts=policy.max_attempts, disksize=disksize)

        await self.events.emit(LifecycleEvent.PRE_UP)
        try:
            await self._bring_up(policy, disksize, self.settings.ip_repair_attempts)
        except CommandError as e:
            raise ProviderError(f"Error bringing {self.name} up: {e}", details=e.details) from e

        logger.info("provider_up")
        await self.events.emit(LifecycleEvent.POST_UP)

    async def _bring_up(
        self, policy: RetryPolicy, disksize: Optional[int], repairs_left: int
    ) -> None:
        init_args: List[str] = ["init"]
        if disksize:
            init_args.insert(0, f"--disksize={disksize}")
        await self._retried(init_args, policy, "provider_init")

        if await self.state() != ProviderState.RUNNING:
            await self.driver.prepare_start(policy)

        try:
            output = await self._retried(["up"], policy, "provider_up_attempt")
        except CommandError as e:
            if not ip_unassigned(e.output):
                raise
            output = e.output
        if not ip_unassigned(output):
            return

        if repairs_left <= 0:
            raise ProviderError(
                f"{self.name} could not assign an IP and the repair limit is exhausted",
                details={"repairs": self.settings.ip_repair_attempts},
            )
        logger.warning("provider_ip_unassigned", repairs_left=repairs_left)
        await self.assign_ip(policy)
        await self._bring_up(policy, None, repairs_left - 1)

    async def down(self, max_attempts: Optional[int] = None) -> None:
        """Shut the VM down."""
        policy = self.policy(max_attempts or self.settings.down_attempts)

        await self.events.emit(LifecycleEvent.PRE_DOWN)
        try:
            await self._retried(["down"], policy, "provider_down_attempt")
        except CommandError as e:
            raise ProviderError(f"Error while shutting down {self.name}: {e}", details=e.details) from e

        logger.info("provider_down")
        await self.events.emit(LifecycleEvent.POST_DOWN)

    async def status(self) -> str:
        """Raw status string reported by the provider."""
        try:
            return await self._retried(["status"], self.policy(), "provider_status")
        except CommandError as e:
            raise ProviderError(f"Error checking {self.name} status: {e}", details=e.details) from e

    async def state(self) -> ProviderState:
        try:
            status = await self.status()
        except EngineError as e:
            logger.warning("provider_status_unknown", error=str(e))
            return ProviderState.UNKNOWN

        if status == RUNNING_STATUS:
            return ProviderState.RUNNING
        if status in DOWN_STATUSES:
            return ProviderState.DOWN
        logger.warning("provider_status_unrecognized", status=status)
        return ProviderState.UNKNOWN

    async def is_up(self) -> bool:
        return await self.status() == RUNNING_STATUS

    async def is_down(self) -> bool:
        return not await self.is_up()

    def has_expected_ip(self, ip: str) -> bool:
        return ip.split(".")[-1] == self.settings.default_ip.split(".")[-1]

    async def assign_ip(self, policy: Optional[RetryPolicy] = None) -> None:
        """Assign the reserved address to the VM's interface over ssh."""
        ip = self.settings.default_ip
        broadcast = ".".join(ip.split(".")[:3] + ["255"])
        remote = (
            f"sudo ifconfig {self.settings.vm_interface} {ip} "
            f"netmask {self.settings.netmask} broadcast {broadcast} up"
        )
        logger.info("assigning_ip", ip=ip, interface=self.settings.vm_interface)
        try:
            await self._retried(["ssh", remote], policy or self.policy(), "provider_assign_ip")
        except CommandError as e:
            raise ProviderError(f"Error assigning IP {ip} to {self.name}: {e}", details=e.details) from e

    async def _probe_ip(self) -> str:
        try:
            return await self._retried(["ip"], self.policy(), "provider_ip")
        except CommandError as e:
            raise ProviderError(f"Error getting {self.name} IP: {e}", details=e.details) from e

    async def get_ip(self) -> str:
        """VM address, repaired when it is not the reserved one."""
        repairs = 0
        while True:
            ip = await self._probe_ip()
            if self.has_expected_ip(ip):
                return ip

            if repairs >= self.settings.ip_repair_attempts:
                raise ProviderError(
                    f"{self.name} reports IP {ip}, expected {self.settings.default_ip}",
                    details={"ip": ip, "expected": self.settings.default_ip, "repairs": repairs},
                )
            repairs += 1
            logger.warning("provider_ip_mismatch", ip=ip, expected=self.settings.default_ip)
            await self.assign_ip()
            await self.up()

    async def get_engine_config(self) -> EngineConfig:
        """Runtime connection parameters, computed once."""
        if self._engine_config is None:
            self._engine_config = EngineConfig(
                protocol=self.settings.engine_protocol,
                host=await self.get_ip(),
                port=self.settings.engine_port,
            )
        return self._engine_config

    async def has_profile(self) -> bool:
        path = self.settings.profile_path
        try:
            path.stat()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise ProviderError(f"Error reading {self.name} profile {str(path)!r}: {e}") from e
        return True

    async def vm_exists(self) -> bool:
        try:
            await self.sh(["info"])
        except CommandError:
            return False
        return True

    async def is_installed(self) -> bool:
        """Binary present, profile present and VM created."""
        if not await self.driver.binary_installed():
            return False
        if not await self.has_profile():
            return False
        return await self.vm_exists()

    def profile(self) -> Mapping[str, str]:
        if self._profile is None:
            self._profile = read_profile(self.settings.profile_path)
        return self._profile

    async def get_server_ips(self) -> List[str]:
        return server_ips(self.profile())

    def path_to_bind(self, path: str) -> str:
        return self.driver.path_to_bind(path)
