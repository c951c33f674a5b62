import asyncio

import pytest

from holdfast.core.backup_config import DayTime, load_backup_config_text
from holdfast.core.errors import HostKeyChanged, ServiceError
from holdfast.services import backup_service
from holdfast.services.backup_service import BackupService
from holdfast.services.channels import TerminalChannel
from holdfast.services.container_connection import ContainerConnection
from holdfast.services.container_terminal import ContainerKind


class _FakeChannel(TerminalChannel):
    def __init__(self):
        super().__init__("fake")
        self.connected = False

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def start(self):
        self.connected = True

    async def close(self):
        self.connected = False

    async def _write(self, data: bytes):
        pass


def _make_service(tmp_path, config_text: str, env_interval=None) -> BackupService:
    config = load_backup_config_text(config_text)
    return BackupService(config, backup_dir=tmp_path / "backups", env_interval=env_interval)


def _make_container(name: str = "bedrock_private") -> ContainerConnection:
    return ContainerConnection(name, ContainerKind.BEDROCK, _FakeChannel())


def _record_backups(service: BackupService) -> list:
    requested = []

    async def _backup_container(container):
        requested.append(container.name)

    service.actor.backup_container = _backup_container
    return requested


# ==========================================
# Schedule resolution
# ==========================================

def test_interval_schedule(tmp_path):
    service = _make_service(tmp_path, "schedule:\n  interval: 3h\n  startupDelay: 5m\n")

    assert service._resolve_schedule() == ("interval", 10800, 300)


def test_daily_schedule(tmp_path):
    service = _make_service(tmp_path, "schedule:\n  daily: '04:15'\n")

    assert service._resolve_schedule() == ("daily", DayTime(4, 15))


def test_listener_only_schedule(tmp_path):
    service = _make_service(tmp_path, "schedule:\n  onLastLogout: true\n")

    assert service._resolve_schedule() is None


def test_env_interval_used_without_schedule(tmp_path):
    service = _make_service(tmp_path, "backupPath: /backups\n", env_interval="2h")

    assert service._resolve_schedule() == ("interval", 7200, 0.0)


def test_no_schedule_at_all_is_rejected(tmp_path):
    service = _make_service(tmp_path, "backupPath: /backups\n")

    with pytest.raises(ServiceError):
        service._resolve_schedule()


def test_interval_and_daily_together_rejected(tmp_path):
    service = _make_service(tmp_path, "schedule:\n  interval: 3h\n  daily: '04:00'\n")

    with pytest.raises(ServiceError):
        service._resolve_schedule()


def test_zero_interval_rejected(tmp_path):
    service = _make_service(tmp_path, "schedule:\n  interval: '0'\n")

    with pytest.raises(ServiceError):
        service._resolve_schedule()


def test_validate_reports_missing_worlds(tmp_path):
    present = tmp_path / "present"
    present.mkdir()
    service = _make_service(tmp_path, f"""
schedule:
  interval: 1h
containers:
  bedrock:
    - name: bedrock_private
      worlds: [{present}, {tmp_path / "absent"}]
""")

    with pytest.raises(ServiceError) as excinfo:
        service.validate()

    assert "absent" in str(excinfo.value)


# ==========================================
# Player events
# ==========================================

def test_login_triggers_backup_when_configured(tmp_path):
    service = _make_service(tmp_path, "schedule:\n  onPlayerLogin: true\n")
    requested = _record_backups(service)
    container = _make_container()
    service._register_listeners(container)

    async def _run():
        container.channel.matcher.feed("[INFO] Player connected: Steve, xuid: 1\n")
        await asyncio.sleep(0.01)

    asyncio.run(_run())

    assert container.player_count == 1
    assert requested == ["bedrock_private"]


def test_last_logout_only_fires_when_empty(tmp_path):
    service = _make_service(tmp_path, "schedule:\n  onLastLogout: true\n")
    requested = _record_backups(service)
    container = _make_container()
    service._register_listeners(container)

    async def _run():
        matcher = container.channel.matcher
        matcher.feed("Steve joined the game\nAlex joined the game\n")
        matcher.feed("Steve left the game\n")
        await asyncio.sleep(0.01)
        assert requested == []
        matcher.feed("Alex left the game\n")
        await asyncio.sleep(0.01)

    asyncio.run(_run())

    assert container.player_count == 0
    assert requested == ["bedrock_private"]


def test_every_logout_fires_with_on_player_logout(tmp_path):
    service = _make_service(tmp_path, "schedule:\n  onPlayerLogout: true\n")
    requested = _record_backups(service)
    container = _make_container()
    service._register_listeners(container)

    async def _run():
        container.channel.matcher.feed(
            "Steve joined the game\nAlex joined the game\nSteve left the game\nAlex left the game\n"
        )
        await asyncio.sleep(0.01)

    asyncio.run(_run())

    assert requested == ["bedrock_private", "bedrock_private"]


# ==========================================
# Lifecycle
# ==========================================

def test_start_and_stop(tmp_path):
    service = _make_service(tmp_path, "schedule:\n  interval: 1h\n  startupDelay: 1h\n  onPlayerLogin: true\n")
    container = _make_container()

    async def _run():
        await service.start(containers=[container])
        assert container.is_running
        assert service.actor.health_file.exists()
        status = service.get_status()
        await service.stop()
        return status

    status = asyncio.run(_run())

    assert not container.is_running
    assert status["healthy"] is True
    assert status["containers"][0]["name"] == "bedrock_private"


def test_start_resumes_held_containers(tmp_path):
    service = _make_service(tmp_path, "schedule:\n  interval: 1h\n  startupDelay: 1h\n")
    container = _make_container()
    container.hold_marker(service.backup_dir).parent.mkdir(parents=True, exist_ok=True)
    container.hold_marker(service.backup_dir).touch()
    cleaned = []

    async def _cleanup(destination):
        cleaned.append(destination)
        container.hold_marker(destination).unlink()

    container.cleanup_incomplete_backup = _cleanup

    async def _run():
        await service.start(containers=[container])
        await service.stop()

    asyncio.run(_run())

    assert cleaned == [service.backup_dir]
    assert not container.is_save_held(service.backup_dir)


def test_fatal_schedule_error_stops_process(tmp_path, monkeypatch):
    service = _make_service(tmp_path, "schedule:\n  interval: 1h\n")
    service.actor.mark_healthy(force_write=True)
    signals = []
    monkeypatch.setattr(backup_service.os, "kill", lambda pid, sig: signals.append(sig))

    async def _fail():
        raise HostKeyChanged("[bedrock]:2222")

    async def _run():
        task = asyncio.create_task(_fail())
        await asyncio.gather(task, return_exceptions=True)
        service._on_schedule_done(task)

    asyncio.run(_run())

    assert signals == [backup_service.signal.SIGTERM]
    assert not service.actor.health_file.exists()


class _MovedHostChannel(_FakeChannel):
    async def start(self):
        raise HostKeyChanged("[mc]:2222")


def test_host_key_change_while_attaching_fails_start(tmp_path):
    service = _make_service(tmp_path, "schedule:\n  onPlayerLogin: true\n")
    container = ContainerConnection("bedrock_private", ContainerKind.BEDROCK, _MovedHostChannel())

    with pytest.raises(HostKeyChanged):
        asyncio.run(service.start(containers=[container]))

    assert not service.actor.health_file.exists()


def test_host_key_change_while_attaching_for_scheduled_pass(tmp_path):
    service = _make_service(tmp_path, "schedule:\n  interval: 1h\n  onPlayerLogin: true\n")
    service.actor.update([ContainerConnection("bedrock_private", ContainerKind.BEDROCK, _MovedHostChannel())])

    with pytest.raises(HostKeyChanged):
        asyncio.run(service._run_pass(is_daily=False))


def test_host_key_change_in_player_event_backup_stops_process(tmp_path, monkeypatch):
    service = _make_service(tmp_path, "schedule:\n  onPlayerLogin: true\n")
    service.actor.mark_healthy(force_write=True)
    signals = []
    monkeypatch.setattr(backup_service.os, "kill", lambda pid, sig: signals.append(sig))

    async def _backup_container(container):
        raise HostKeyChanged("[mc]:2222")

    service.actor.backup_container = _backup_container
    container = _make_container()
    service._register_listeners(container)

    async def _run():
        container.channel.matcher.feed("[INFO] Player connected: Steve, xuid: 1\n")
        await asyncio.sleep(0.01)

    asyncio.run(_run())

    assert signals == [backup_service.signal.SIGTERM]
    assert not service.actor.health_file.exists()
    assert not service._event_tasks


def test_ordinary_background_failure_is_only_logged(tmp_path, monkeypatch):
    service = _make_service(tmp_path, "schedule:\n  onPlayerLogin: true\n")
    service.actor.mark_healthy(force_write=True)
    signals = []
    monkeypatch.setattr(backup_service.os, "kill", lambda pid, sig: signals.append(sig))

    async def _fail():
        raise ServiceError("disk full")

    async def _run():
        service.track(asyncio.create_task(_fail()))
        await asyncio.sleep(0.01)

    asyncio.run(_run())

    assert signals == []
    assert service.actor.health_file.exists()
