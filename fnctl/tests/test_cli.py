from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, call, patch

import pytest
from kubernetes.config.config_exception import ConfigException

from fnctl.src.cli import (
    build_parser,
    delete_function,
    deploy_function,
    load_function_file,
    main,
)
from fnctl.src.errors import (
    AlreadyExistsError,
    ApplyError,
    ConfigError,
    InvalidSpecError,
    NotFoundError,
)
from fnctl.src.function import Function, FunctionSpec, FunctionState, FunctionStatus

FUNCTION_YAML = """\
apiVersion: fnctl.io/v1
kind: Function
metadata:
  name: funcname
  namespace: funcnamespace
  labels:
    team: a
spec:
  image: repo/func:1
  replicas: 2
  env:
    - name: GREETING
      value: hello
"""


def _write(tmp_path: Path, content: str) -> str:
    path = tmp_path / "function.yaml"
    path.write_text(content, encoding="utf-8")
    return str(path)


def _stored(state: FunctionState, message: str = "", resource_version: str = "2") -> Function:
    return Function(
        name="funcname",
        namespace="funcnamespace",
        resource_version=resource_version,
        spec=FunctionSpec(image="repo/func:1"),
        status=FunctionStatus(state=state, message=message),
    )


# ---------------------------------------------------------------------------
# load_function_file()
# ---------------------------------------------------------------------------


def test_load_function_file_reads_declaration(tmp_path: Path) -> None:
    function = load_function_file(_write(tmp_path, FUNCTION_YAML))

    assert function.namespaced_name == "funcnamespace.funcname"
    assert function.labels == {"team": "a"}
    assert function.spec.image == "repo/func:1"
    assert function.spec.replicas == 2
    assert function.spec.env == [{"name": "GREETING", "value": "hello"}]


def test_load_function_file_namespace_override(tmp_path: Path) -> None:
    function = load_function_file(_write(tmp_path, FUNCTION_YAML), namespace="other")

    assert function.namespace == "other"


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("- just\n- a list\n", "must contain a mapping"),
        ("spec: {image: x}\n", "has no metadata.name"),
        ("metadata: [unclosed\n", "is not valid YAML"),
    ],
)
def test_load_function_file_rejects_bad_content(tmp_path: Path, content: str, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_function_file(_write(tmp_path, content))


def test_load_function_file_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Cannot read function file"):
        load_function_file(str(tmp_path / "missing.yaml"))


def test_load_function_file_rejects_mistyped_spec(tmp_path: Path) -> None:
    content = FUNCTION_YAML.replace("replicas: 2", "replicas: two")

    with pytest.raises(InvalidSpecError, match="spec.replicas must be an integer"):
        load_function_file(_write(tmp_path, content))


# ---------------------------------------------------------------------------
# delete_function()
# ---------------------------------------------------------------------------


def test_delete_removes_function_then_generated_resources() -> None:
    calls = MagicMock()

    delete_function(calls.client, calls.applier, "funcnamespace", "funcname")

    assert calls.mock_calls == [
        call.client.delete("funcnamespace", "funcname"),
        call.applier.delete("funcnamespace", "funcname"),
    ]


def test_delete_of_missing_function_still_cleans_up() -> None:
    client = MagicMock()
    client.delete.side_effect = NotFoundError("not found", status=404)
    applier = MagicMock()

    delete_function(client, applier, "funcnamespace", "funcname")

    applier.delete.assert_called_once_with("funcnamespace", "funcname")


def test_main_delete_prints_result(capsys: pytest.CaptureFixture[str]) -> None:
    client = MagicMock()
    applier = MagicMock()

    rc = main(["delete", "funcname", "-n", "funcnamespace"], client=client, applier=applier)

    assert rc == 0
    client.delete.assert_called_once_with("funcnamespace", "funcname")
    applier.delete.assert_called_once_with("funcnamespace", "funcname")
    assert capsys.readouterr().out == "funcnamespace.funcname\tdeleted\n"


def test_main_delete_reports_apply_failure(capsys: pytest.CaptureFixture[str]) -> None:
    applier = MagicMock()
    applier.delete.side_effect = ApplyError("Failed to delete deployment funcnamespace.funcname")

    rc = main(["delete", "funcname", "-n", "funcnamespace"], client=MagicMock(), applier=applier)

    assert rc == 1
    assert "Failed to delete deployment" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# deploy_function()
# ---------------------------------------------------------------------------


def test_deploy_creates_and_waits_for_processing() -> None:
    client = MagicMock()
    client.get.side_effect = [
        NotFoundError("not found", status=404),
        _stored(FunctionState.CREATED),
        _stored(FunctionState.PROCESSED),
    ]
    function = _stored(FunctionState.ERROR, "old failure", resource_version="99")

    with patch("fnctl.src.waiter.time.sleep"):
        result = deploy_function(client, function, timeout_seconds=30)

    created = client.create.call_args.args[0]
    assert created.resource_version == ""
    assert created.status == FunctionStatus()
    client.update.assert_not_called()
    assert result.status.state is FunctionState.PROCESSED


def test_deploy_replaces_existing_function() -> None:
    client = MagicMock()
    client.create.side_effect = AlreadyExistsError("exists", status=409)
    client.get.side_effect = [
        _stored(FunctionState.PROCESSED, resource_version="7"),
        _stored(FunctionState.PROCESSED, resource_version="8"),
    ]
    function = _stored(FunctionState.PROCESSED, resource_version="")

    result = deploy_function(client, function, timeout_seconds=30)

    updated = client.update.call_args.args[0]
    assert updated.resource_version == "7"
    assert updated.status.state is FunctionState.CREATED
    assert result.resource_version == "8"


# ---------------------------------------------------------------------------
# main()
# ---------------------------------------------------------------------------


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_main_deploy_prints_state_and_sets_publish(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    client = MagicMock()
    client.get.return_value = _stored(FunctionState.PROCESSED)

    rc = main(["deploy", "-f", _write(tmp_path, FUNCTION_YAML), "--publish"], client=client)

    assert rc == 0
    assert client.create.call_args.args[0].spec.publish is True
    assert capsys.readouterr().out == "funcnamespace.funcname\tprocessed\n"


def test_main_wait_reports_failed_function(capsys: pytest.CaptureFixture[str]) -> None:
    client = MagicMock()
    client.get.return_value = _stored(FunctionState.ERROR, "Validation failed: bad alias")

    rc = main(["wait", "funcname", "-n", "funcnamespace"], client=client)

    assert rc == 1
    assert capsys.readouterr().err == "Error: Validation failed: bad alias\n"


def test_main_get_prints_message(capsys: pytest.CaptureFixture[str]) -> None:
    client = MagicMock()
    client.get.return_value = _stored(FunctionState.ERROR, "boom")

    rc = main(["get", "funcname", "-n", "funcnamespace"], client=client)

    assert rc == 0
    client.get.assert_called_once_with("funcnamespace", "funcname")
    assert capsys.readouterr().out == "funcnamespace.funcname\terror\tboom\n"


def test_main_get_prints_created_for_initial_state(capsys: pytest.CaptureFixture[str]) -> None:
    client = MagicMock()
    client.get.return_value = _stored(FunctionState.CREATED)

    assert main(["get", "funcname"], client=client) == 0
    assert capsys.readouterr().out == "funcnamespace.funcname\tcreated\n"


def test_main_get_missing_function_fails(capsys: pytest.CaptureFixture[str]) -> None:
    client = MagicMock()
    client.get.side_effect = NotFoundError("Failed to get default.nope: 404 Not Found", status=404)

    assert main(["get", "nope"], client=client) == 1
    assert "404 Not Found" in capsys.readouterr().err


def test_main_builds_client_from_kubeconfig() -> None:
    clients = MagicMock()
    with (
        patch("fnctl.src.cli.load_kube_configuration") as mock_load,
        patch("fnctl.src.cli.build_clients", return_value=clients),
        patch("fnctl.src.cli.FunctionClient") as mock_client_cls,
    ):
        mock_client_cls.return_value.get.return_value = _stored(FunctionState.PROCESSED)
        rc = main(["--kubeconfig", "/tmp/kubeconfig", "get", "funcname"])

    assert rc == 0
    mock_load.assert_called_once_with("/tmp/kubeconfig")
    mock_client_cls.assert_called_once_with(clients.custom_api, clients.apiextensions_api)


def test_main_builds_applier_for_delete_from_kubeconfig() -> None:
    clients = MagicMock()
    with (
        patch("fnctl.src.cli.load_kube_configuration"),
        patch("fnctl.src.cli.build_clients", return_value=clients),
        patch("fnctl.src.cli.FunctionClient"),
        patch("fnctl.src.cli.DeploymentApplier") as mock_applier_cls,
    ):
        rc = main(["delete", "funcname"])

    assert rc == 0
    mock_applier_cls.assert_called_once_with(
        apps_api=clients.apps_api,
        core_api=clients.core_api,
        autoscaling_api=clients.autoscaling_api,
    )
    mock_applier_cls.return_value.delete.assert_called_once_with("default", "funcname")


def test_main_reports_missing_kube_configuration(capsys: pytest.CaptureFixture[str]) -> None:
    with patch(
        "fnctl.src.cli.load_kube_configuration",
        side_effect=ConfigException("Invalid kube-config file. No configuration found."),
    ):
        rc = main(["get", "funcname"])

    assert rc == 1
    assert "No configuration found" in capsys.readouterr().err
