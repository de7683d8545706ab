#!/usr/bin/env python3
"""
CLI tool for the instance mapping operator.
Provides a kubectl-like interface over the operator's REST API.
"""

import base64
import json
import sys

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = "http://localhost:8000/api/v1"

SUPPORTED_KINDS = ("Mapping", "Secret", "ConfigMap")


class MappingOperatorCLI:
    """CLI client for the mapping operator API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _make_request(self, method: str, endpoint: str, quiet_status=(), **kwargs):
        """Make HTTP request to the API; returns None on failure"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, **kwargs)
            if response.status_code in quiet_status:
                return None
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if getattr(e, "response", None) is not None:
                try:
                    error_detail = e.response.json()
                    if isinstance(error_detail, dict):
                        error_detail = error_detail.get("detail", error_detail)
                    click.echo(f"Detail: {error_detail}", err=True)
                except ValueError:
                    click.echo(f"Response: {e.response.text}", err=True)
            return None

    def mapping_path(self, namespace: str, name: str = "") -> str:
        path = f"/namespaces/{namespace}/mappings"
        return f"{path}/{name}" if name else path


def load_documents(filename: str):
    """Load one or more resource documents from a YAML or JSON file"""
    with open(filename, "r") as f:
        if filename.endswith(".json"):
            data = json.load(f)
            return data if isinstance(data, list) else [data]
        return [doc for doc in yaml.safe_load_all(f) if doc]


def secret_data(doc) -> dict:
    """Merge a Secret's base64 ``data`` with its plain ``stringData``"""
    data = {
        key: base64.b64decode(value).decode("utf-8")
        for key, value in (doc.get("data") or {}).items()
    }
    data.update(doc.get("stringData") or {})
    return data


def ready_condition(resource) -> dict:
    for condition in resource.get("status", {}).get("conditions") or []:
        if condition.get("type") == "Ready":
            return condition
    return {}


def fail():
    sys.exit(1)


@click.group()
@click.option(
    "--api-url",
    envvar="MAPCTL_API_URL",
    default=API_BASE_URL,
    show_default=True,
    help="Base URL of the operator API",
)
@click.pass_context
def cli(ctx, api_url):
    """Instance mapping operator CLI - kubectl-like interface for mappings"""
    ctx.obj = MappingOperatorCLI(api_url)


@cli.command()
@click.option(
    "--filename", "-f", required=True, type=click.Path(exists=True), help="File"
)
@click.pass_obj
def apply(client, filename):
    """Create or update Mappings, Secrets and ConfigMaps from a file"""
    failed = False
    for doc in load_documents(filename):
        kind = doc.get("kind")
        metadata = doc.get("metadata") or {}
        namespace = metadata.get("namespace", "default")
        name = metadata.get("name")

        if kind not in SUPPORTED_KINDS or not name:
            click.echo(
                f"Skipping document: kind must be one of {', '.join(SUPPORTED_KINDS)} "
                f"and metadata.name is required",
                err=True,
            )
            failed = True
            continue

        if kind == "Secret":
            result = client._make_request(
                "PUT",
                f"/namespaces/{namespace}/secrets/{name}",
                json={"data": secret_data(doc)},
            )
            action = "configured"
        elif kind == "ConfigMap":
            result = client._make_request(
                "PUT",
                f"/namespaces/{namespace}/configmaps/{name}",
                json={"data": doc.get("data") or {}},
            )
            action = "configured"
        else:
            existing = client._make_request(
                "GET", client.mapping_path(namespace, name), quiet_status=(404,)
            )
            if existing is None:
                result = client._make_request(
                    "POST",
                    client.mapping_path(namespace),
                    json={"name": name, "spec": doc.get("spec") or {}},
                )
                action = "created"
            else:
                result = client._make_request(
                    "PUT",
                    client.mapping_path(namespace, name),
                    json={"spec": doc.get("spec") or {}},
                )
                action = "configured"

        if result is None:
            failed = True
        else:
            click.echo(f"{kind.lower()}/{name} {action}")

    if failed:
        fail()


@cli.command()
@click.argument("name", required=False)
@click.option("--namespace", "-n", default="default", help="Namespace")
@click.option("--all-namespaces", "-A", is_flag=True, help="List across namespaces")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "wide"]), default="table"
)
@click.pass_obj
def get(client, name, namespace, all_namespaces, output):
    """List mappings, or show one"""
    if name:
        result = client._make_request("GET", client.mapping_path(namespace, name))
        resources = [result] if result is not None else None
    elif all_namespaces:
        resources = client._make_request("GET", "/mappings")
    else:
        resources = client._make_request("GET", client.mapping_path(namespace))

    if resources is None:
        fail()

    if output == "json":
        click.echo(json.dumps(resources, indent=2))
        return

    headers = ["NAMESPACE", "NAME", "SERVICE INSTANCE", "TARGET", "READY", "REASON"]
    if output == "wide":
        headers += ["MESSAGE", "GENERATION", "DELETING"]

    rows = []
    for resource in resources:
        mapping = resource["spec"].get("mapping", {})
        condition = ready_condition(resource)
        row = [
            resource["namespace"],
            resource["name"],
            mapping.get("serviceInstanceID", ""),
            mapping.get("targetNamespace", ""),
            condition.get("status", "Unknown"),
            condition.get("reason", ""),
        ]
        if output == "wide":
            row += [
                condition.get("message", ""),
                resource["generation"],
                "yes" if resource.get("deletion_timestamp") else "",
            ]
        rows.append(row)

    if not rows:
        click.echo("No mappings found")
        return
    click.echo(tabulate(rows, headers=headers, tablefmt="plain"))


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default", help="Namespace")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def describe(client, name, namespace, output):
    """Describe a mapping"""
    result = client._make_request("GET", client.mapping_path(namespace, name))
    if result is None:
        fail()

    if output == "yaml":
        click.echo(yaml.safe_dump(result, default_flow_style=False, sort_keys=False))
    else:
        click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default", help="Namespace")
@click.confirmation_option(prompt="Are you sure you want to delete this mapping?")
@click.pass_obj
def delete(client, name, namespace):
    """Delete a mapping (removes the inventory record first)"""
    result = client._make_request("DELETE", client.mapping_path(namespace, name))
    if result is None:
        fail()

    if result.get("status") == "deleted":
        click.echo(f"mapping/{name} deleted")
    else:
        click.echo(f"mapping/{name} marked for deletion")


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default", help="Namespace")
@click.pass_obj
def reconcile(client, name, namespace):
    """Trigger reconciliation of a mapping now"""
    path = client.mapping_path(namespace, name) + "/reconcile"
    if client._make_request("POST", path) is None:
        fail()
    click.echo(f"Reconciliation triggered for mapping/{name}")


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default", help="Namespace")
@click.pass_obj
def inventory(client, name, namespace):
    """Show the inventory records of a mapping's service instance"""
    path = client.mapping_path(namespace, name) + "/inventory"
    records = client._make_request("GET", path)
    if records is None:
        fail()
    if not records:
        click.echo("No inventory records found")
        return

    rows = [
        [r["platform"], r["primary_id"], r["secondary_id"], r["is_default"]]
        for r in records
    ]
    click.echo(
        tabulate(
            rows,
            headers=["PLATFORM", "PRIMARY ID", "SECONDARY ID", "DEFAULT"],
            tablefmt="grid",
        )
    )


@cli.command()
@click.pass_obj
def status(client):
    """Check operator API health"""
    root = client.base_url.rsplit("/api/", 1)[0]
    try:
        response = requests.get(f"{root}/", timeout=10)
        response.raise_for_status()
        click.echo(f"Operator is healthy: {response.json()}")
    except requests.exceptions.RequestException as e:
        click.echo(f"Operator is not reachable: {e}", err=True)
        fail()


if __name__ == "__main__":
    cli()
