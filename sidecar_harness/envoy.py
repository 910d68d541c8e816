"""Proxy process supervision: launch, liveness wait, graceful stop and cleanup."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from sidecar_harness.admin import AdminClient
from sidecar_harness.config import HarnessConfig
from sidecar_harness.errors import ConvergenceTimeout, LaunchError, ProxyExitError
from sidecar_harness.poller import wait_for_http

log = logging.getLogger("sidecar-harness")


def base_id_for(role: str, index: int) -> str:
    """Base id for ``role`` in port block ``index``; unique across blocks and roles."""
    if role == "client":
        return str(index * 2 + 1)
    return str((index + 1) * 2)


@dataclass
class ProxyInstance:
    """One spawned proxy process and everything needed to stop and clean it up."""

    role: str
    process: asyncio.subprocess.Process
    admin_port: int
    config_path: Path
    bootstrap: str
    args: list[str]
    base_id: str = ""
    epoch: int = 0
    hot_restart: bool = True
    working_dir: Path | None = None
    killed: bool = False
    admin_host: str = "127.0.0.1"
    _admin: AdminClient | None = field(default=None, init=False, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def live(self) -> bool:
        return self.process.returncode is None

    @property
    def admin(self) -> AdminClient:
        if self._admin is None:
            self._admin = AdminClient(self.admin_port, host=self.admin_host)
        return self._admin

    @property
    def shm_name(self) -> str | None:
        if not self.hot_restart or not self.base_id:
            return None
        return f"envoy_shared_memory_{self.base_id}0"


class ProxySupervisor:
    """Launches and stops proxy processes for one harness config."""

    def __init__(self, config: HarnessConfig | None = None):
        self.config = config or HarnessConfig.from_env()
        self._live: dict[int, ProxyInstance] = {}

    # -- launch ---------------------------------------------------------------

    def resolve_binary(self) -> Path:
        path = Path(self.config.proxy_path)
        if path.exists():
            return path.absolute()
        if path.parent == Path("."):
            found = shutil.which(str(path))
            if found:
                return Path(found).absolute()
        raise LaunchError(f"proxy binary not found at {path} (set ENVOY_PATH to override)")

    def build_args(
        self,
        config_path: Path,
        *,
        base_id: str = "",
        epoch: int = 0,
        stress: bool = False,
        disable_hot_restart: bool = False,
        extra_args: Sequence[str] = (),
    ) -> list[str]:
        args = ["-c", str(config_path), "--drain-time-s", str(self.config.drain_time_s), "--allow-unknown-fields"]
        if stress:
            args += ["--concurrency", "10"]
        else:
            # debug is far too verbose.
            args += ["-l", self.config.log_level, "--concurrency", "1"]
        if disable_hot_restart or not base_id:
            args.append("--disable-hot-restart")
        else:
            # base id is shared between restarted proxies
            args += [
                "--base-id",
                base_id,
                "--parent-shutdown-time-s",
                str(self.config.parent_shutdown_time_s),
                "--restart-epoch",
                str(epoch),
            ]
        args += list(extra_args)
        return args

    def write_config(self, bootstrap: str, admin_port: int) -> Path:
        self.config.out_dir.mkdir(parents=True, exist_ok=True)
        # The proxy may run with a different cwd
        config_path = (self.config.out_dir / f"config.conf.{admin_port}.yaml").absolute()
        config_path.write_text(bootstrap, encoding="utf-8")
        log.info(f"proxy config in {config_path}")
        return config_path

    async def launch(
        self,
        bootstrap: str,
        role: str,
        admin_port: int,
        *,
        base_id: str = "",
        epoch: int = 0,
        stress: bool = False,
        disable_hot_restart: bool = False,
        extra_args: Sequence[str] = (),
        working_dir: Path | None = None,
        copy_yaml_files: bool = False,
    ) -> ProxyInstance:
        """Start a proxy and block until its admin endpoint answers.

        Raises LaunchError if the process cannot be spawned, exits early, or
        stays unreachable for ``launch_timeout`` seconds.
        """
        current = self._live.get(admin_port)
        if current is not None and current.live:
            raise LaunchError(f"a {current.role} proxy (pid {current.pid}) is already live on admin port {admin_port}")

        binary = self.resolve_binary()
        config_path = self.write_config(bootstrap, admin_port)
        if copy_yaml_files:
            _copy_yaml(config_path, role)

        hot_restart = not disable_hot_restart and bool(base_id)
        args = self.build_args(
            config_path,
            base_id=base_id,
            epoch=epoch,
            stress=stress,
            disable_hot_restart=disable_hot_restart,
            extra_args=extra_args,
        )
        log.info(f"{role} proxy cmd {[str(binary)] + args}")
        try:
            process = await asyncio.create_subprocess_exec(
                str(binary),
                *args,
                cwd=str(working_dir) if working_dir else None,
                stdin=None,
                stdout=None,
                stderr=None,
            )
        except OSError as exc:
            raise LaunchError(f"failed to start {role} proxy {binary}: {exc}") from exc

        instance = ProxyInstance(
            role=role,
            process=process,
            admin_port=admin_port,
            config_path=config_path,
            bootstrap=bootstrap,
            args=args,
            base_id=base_id,
            epoch=epoch,
            hot_restart=hot_restart,
            working_dir=working_dir,
            admin_host=self.config.admin_host,
        )
        self._live[admin_port] = instance

        try:
            await wait_for_http(
                instance.admin.url(self.config.liveness_path),
                interval=self.config.launch_interval,
                timeout=self.config.launch_timeout,
                process=process,
            )
        except ConvergenceTimeout as exc:
            await self._kill(instance)
            self._forget(instance)
            self.tear_down(instance)
            raise LaunchError(f"{role} proxy on admin port {admin_port} did not become live: {exc.reason}") from exc

        log.info(f"{role} proxy live (pid {process.pid}, admin port {admin_port})")
        return instance

    # -- stop -----------------------------------------------------------------

    async def stop(self, instance: ProxyInstance) -> None:
        """Ask the proxy to quit and wait up to ``stop_timeout`` for it to exit.

        A non-zero exit raises ProxyExitError. If the proxy is still running
        when the timeout fires it is killed; that is logged and recorded on
        ``instance.killed`` but not raised.
        """
        log.info(f"stop {instance.role} proxy ...")
        try:
            if instance.live:
                try:
                    await asyncio.wait_for(self._quit_and_wait(instance), timeout=self.config.stop_timeout)
                except asyncio.TimeoutError:
                    log.warning(f"{instance.role} proxy (pid {instance.pid}) killed as timeout reached")
                    await self._kill(instance)
                    return
        finally:
            self._forget(instance)

        code = instance.returncode
        if code:
            raise ProxyExitError(instance.role, code)
        log.info(f"stop {instance.role} proxy ... done")

    async def _quit_and_wait(self, instance: ProxyInstance) -> int:
        await instance.admin.quit()
        return await instance.process.wait()

    async def _kill(self, instance: ProxyInstance) -> None:
        if instance.live:
            try:
                instance.process.kill()
            except ProcessLookupError:
                pass
            instance.killed = True
        await instance.process.wait()

    def _forget(self, instance: ProxyInstance) -> None:
        if self._live.get(instance.admin_port) is instance:
            del self._live[instance.admin_port]

    # -- cleanup --------------------------------------------------------------

    def tear_down(self, instance: ProxyInstance) -> list[str]:
        """Remove the shared memory segment and rendered config of ``instance``.

        Best effort: failures are logged and returned, never raised.
        """
        errors: list[str] = []
        targets = [instance.config_path]
        if instance.shm_name:
            targets.insert(0, Path(self.config.shm_dir) / instance.shm_name)
        for path in targets:
            try:
                path.unlink()
            except FileNotFoundError:
                log.debug(f"{path} already gone")
            except OSError as exc:
                msg = f"failed to remove {path}: {exc}"
                log.warning(msg)
                errors.append(msg)
            else:
                log.info(f"removed {path}")
        return errors


def _copy_yaml(config_path: Path, role: str) -> None:
    out = Path.cwd() / "testoutput"
    try:
        out.mkdir(parents=True, exist_ok=True)
        shutil.copy(config_path, out / f"{role}.yaml")
    except OSError as exc:
        log.warning(f"error copying yaml files: {exc}")
