import paramiko
import pytest

from holdfast.core.errors import HostKeyChanged
from holdfast.services.ssh_host_keys import (
    HostKeyStatus,
    SSHHostKeyValidator,
    TrustOnFirstUsePolicy,
    host_ident,
)


@pytest.fixture(scope="module")
def keys():
    return paramiko.RSAKey.generate(1024), paramiko.RSAKey.generate(1024)


def test_first_key_is_recorded(tmp_path, keys):
    key, _ = keys
    validator = SSHHostKeyValidator(tmp_path / ".authorizedKeys")

    assert validator.validate("[bedrock]:2222", key) == HostKeyStatus.NOT_FOUND
    validator.check("[bedrock]:2222", key)

    line = (tmp_path / ".authorizedKeys").read_text(encoding="utf-8").strip()
    assert line == f"[bedrock]:2222 ssh-rsa {key.get_base64()}"
    assert validator.validate("[bedrock]:2222", key) == HostKeyStatus.OK


def test_known_key_is_accepted(tmp_path, keys):
    key, _ = keys
    validator = SSHHostKeyValidator(tmp_path / ".authorizedKeys")
    validator.record("bedrock", key)

    validator.check("bedrock", key)

    assert len((tmp_path / ".authorizedKeys").read_text(encoding="utf-8").splitlines()) == 1


def test_changed_key_is_refused(tmp_path, keys):
    key, other = keys
    validator = SSHHostKeyValidator(tmp_path / ".authorizedKeys")
    validator.record("bedrock", key)

    assert validator.validate("bedrock", other) == HostKeyStatus.CHANGED
    with pytest.raises(HostKeyChanged) as excinfo:
        validator.check("bedrock", other)

    assert excinfo.value.host_ident == "bedrock"


def test_keys_are_tracked_per_host(tmp_path, keys):
    key, other = keys
    validator = SSHHostKeyValidator(tmp_path / ".authorizedKeys")
    validator.check("[bedrock]:2222", key)

    validator.check("[java]:2222", other)

    assert validator.validate("[java]:2222", other) == HostKeyStatus.OK


def test_policy_routes_through_validator(tmp_path, keys):
    key, other = keys
    validator = SSHHostKeyValidator(tmp_path / ".authorizedKeys")
    policy = TrustOnFirstUsePolicy(validator)
    client = paramiko.SSHClient()

    policy.missing_host_key(client, "[bedrock]:2222", key)
    with pytest.raises(HostKeyChanged):
        policy.missing_host_key(client, "[bedrock]:2222", other)


def test_comment_lines_are_ignored(tmp_path, keys):
    key, _ = keys
    path = tmp_path / ".authorizedKeys"
    path.write_text(f"# bedrock ssh-rsa {key.get_base64()}\n", encoding="utf-8")

    assert SSHHostKeyValidator(path).validate("bedrock", key) == HostKeyStatus.NOT_FOUND


@pytest.mark.parametrize("host,port,ident", [
    ("bedrock", 22, "bedrock"),
    ("bedrock", 2222, "[bedrock]:2222"),
])
def test_host_ident(host, port, ident):
    assert host_ident(host, port) == ident
