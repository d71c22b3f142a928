"""Command line for submitting Functions and waiting on the controller.

``fnctl deploy -f function.yaml`` creates (or replaces) a Function and blocks
until the controller has processed it; ``fnctl wait`` and ``fnctl get`` work
on Functions that already exist. ``fnctl delete`` removes a Function together
with the Deployment, Service and autoscaler generated for it. Published
snapshots are separate Functions and are left alone.
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence

import yaml
from kubernetes.config.config_exception import ConfigException

from fnctl.src.deployer import DeploymentApplier
from fnctl.src.errors import AlreadyExistsError, ConfigError, FunctionError, NotFoundError
from fnctl.src.function import Function, FunctionStatus
from fnctl.src.kube import build_clients, load_kube_configuration
from fnctl.src.store import FunctionClient
from fnctl.src.waiter import wait_condition_processed, wait_until_condition

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0


def load_function_file(path: str, namespace: str | None = None) -> Function:
    """Read a Function declaration from a YAML file."""
    try:
        with open(path, encoding="utf-8") as handle:
            body = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigError(f"Cannot read function file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Function file {path} is not valid YAML: {exc}") from exc

    if not isinstance(body, dict):
        raise ConfigError(f"Function file {path} must contain a mapping")

    function = Function.from_dict(body)
    if not function.name:
        raise ConfigError(f"Function file {path} has no metadata.name")
    function.spec.check()
    if namespace:
        function.namespace = namespace
    return function


def deploy_function(
    client: FunctionClient,
    function: Function,
    timeout_seconds: float,
    interval_seconds: float = 0.25,
) -> Function:
    """Submit ``function`` and wait until the controller processed it.

    An existing Function of the same name is replaced and put back into the
    initial state so that the wait observes the new reconcile.
    """
    function.resource_version = ""
    function.status = FunctionStatus()
    try:
        client.create(function)
        LOGGER.info("Created function %s", function.namespaced_name)
    except AlreadyExistsError:
        existing = client.get(function.namespace, function.name)
        function.resource_version = existing.resource_version
        client.update(function)
        LOGGER.info("Updated function %s", function.namespaced_name)

    return wait_until_condition(
        client,
        function.namespace,
        function.name,
        wait_condition_processed,
        timeout_seconds=timeout_seconds,
        interval_seconds=interval_seconds,
    )


def delete_function(
    client: FunctionClient, applier: DeploymentApplier, namespace: str, name: str
) -> None:
    """Delete a Function and the resources generated for it.

    A Function that is already gone is not an error, so a repeated delete
    still cleans up generated resources left behind.
    """
    try:
        client.delete(namespace, name)
        LOGGER.info("Deleted function %s.%s", namespace, name)
    except NotFoundError:
        LOGGER.info("Function %s.%s not found, removing generated resources", namespace, name)
    applier.delete(namespace, name)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fnctl", description="Manage Function resources")
    parser.add_argument("--kubeconfig", default=None, help="path to a kubeconfig file")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    deploy = subparsers.add_parser("deploy", help="create or replace a Function and wait for it")
    deploy.add_argument("-f", "--file", required=True, help="Function declaration (YAML)")
    deploy.add_argument("-n", "--namespace", default=None)
    deploy.add_argument("--publish", action="store_true", help="publish a version after deploying")
    deploy.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT_SECONDS)

    wait = subparsers.add_parser("wait", help="wait until a Function has been processed")
    wait.add_argument("name")
    wait.add_argument("-n", "--namespace", default="default")
    wait.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT_SECONDS)

    get = subparsers.add_parser("get", help="show the state of a Function")
    get.add_argument("name")
    get.add_argument("-n", "--namespace", default="default")

    delete = subparsers.add_parser(
        "delete", help="delete a Function and its generated resources"
    )
    delete.add_argument("name")
    delete.add_argument("-n", "--namespace", default="default")

    return parser


def _print_function(function: Function) -> None:
    state = str(function.status.state) or "created"
    line = f"{function.namespaced_name}\t{state}"
    if function.status.message:
        line = f"{line}\t{function.status.message}"
    print(line)


def main(
    argv: Sequence[str] | None = None,
    client: FunctionClient | None = None,
    applier: DeploymentApplier | None = None,
) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        if client is None:
            load_kube_configuration(args.kubeconfig)
            clients = build_clients()
            client = FunctionClient(clients.custom_api, clients.apiextensions_api)
            applier = DeploymentApplier(
                apps_api=clients.apps_api,
                core_api=clients.core_api,
                autoscaling_api=clients.autoscaling_api,
            )

        if args.command == "deploy":
            function = load_function_file(args.file, args.namespace)
            if args.publish:
                function.spec.publish = True
            _print_function(deploy_function(client, function, args.timeout))
        elif args.command == "wait":
            _print_function(
                wait_until_condition(
                    client,
                    args.namespace,
                    args.name,
                    wait_condition_processed,
                    timeout_seconds=args.timeout,
                )
            )
        elif args.command == "delete":
            if applier is None:
                raise ConfigError("Deleting a function needs a deployment applier")
            delete_function(client, applier, args.namespace, args.name)
            print(f"{args.namespace}.{args.name}\tdeleted")
        else:
            _print_function(client.get(args.namespace, args.name))
    except (FunctionError, ConfigException) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
