"""
winfleet/utils/k8s.py

Provides utilities to interact with Kubernetes objects via 'kubectl':
reading objects as JSON, applying manifests, deleting objects, and
reading/writing Secrets.
"""

from __future__ import annotations

import base64
import json
from typing import Any, Dict, List, Optional

from winfleet.utils.async_command_runner import CommandError, run_command
from winfleet.utils.backoff import BackoffPolicy

# kubectl calls against the API server are retried briefly for blips
KUBECTL_RETRIES = 3
KUBECTL_POLICY = BackoffPolicy(initial=0.5, multiplier=2.0, maximum=4.0)


async def kubectl(args: List[str], *, input_data: Optional[str] = None) -> str:
    """
    Run `kubectl <args>` and return stdout.

    Raises:
        CommandError: If kubectl fails after retries. NotFound errors are not retried.
    """
    try:
        return await run_command(
            ["kubectl"] + args,
            sensitive=False,
            input_data=input_data,
            retries=1,
        )
    except CommandError as ex:
        if ex.not_found:
            raise
    return await run_command(
        ["kubectl"] + args,
        sensitive=False,
        input_data=input_data,
        retries=KUBECTL_RETRIES - 1,
        policy=KUBECTL_POLICY,
    )


async def get_object(
    kind: str, name: str, namespace: Optional[str] = None
) -> Optional[Dict[str, Any]]:
    """
    Retrieve one object as parsed JSON, or None if it does not exist.

    Raises:
        CommandError: If kubectl fails for reasons other than 'NotFound'.
    """
    args = ["get", kind, name, "-o", "json"]
    if namespace:
        args = ["-n", namespace] + args
    try:
        raw = await kubectl(args)
    except CommandError as ex:
        if ex.not_found:
            return None
        raise
    parsed: Dict[str, Any] = json.loads(raw)
    return parsed


async def list_objects(
    kind: str,
    namespace: Optional[str] = None,
    selector: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """List objects of `kind`, optionally filtered by a label selector."""
    args = ["get", kind, "-o", "json"]
    if namespace:
        args = ["-n", namespace] + args
    if selector:
        args += ["-l", selector]
    parsed = json.loads(await kubectl(args))
    items: List[Dict[str, Any]] = parsed.get("items", [])
    return items


async def apply_manifest(manifest: Dict[str, Any]) -> None:
    """Create or update an object with `kubectl apply -f -`."""
    await kubectl(["apply", "-f", "-"], input_data=json.dumps(manifest, indent=2))


async def delete_object(kind: str, name: str, namespace: Optional[str] = None) -> None:
    """Delete an object; a missing object is not an error."""
    args = ["delete", kind, name, "--ignore-not-found=true", "--wait=false"]
    if namespace:
        args = ["-n", namespace] + args
    await kubectl(args)


async def get_k8s_secret_data(secret_name: str, namespace: str) -> Optional[Dict[str, str]]:
    """
    Retrieve the key-value data of a Kubernetes Secret (decoded from base64).

    Returns:
        A dict of key => plaintext value if found, else None if the Secret is missing.
    """
    secret_obj = await get_object("secret", secret_name, namespace)
    if secret_obj is None:
        return None
    b64_data = secret_obj.get("data", {}) or {}
    decoded = {
        key: base64.b64decode(val).decode("utf-8") for key, val in b64_data.items()
    }
    return decoded if decoded else None


async def put_k8s_secret_data(
    secret_name: str,
    namespace: str,
    data: Dict[str, str],
    labels: Optional[Dict[str, str]] = None,
) -> None:
    """
    Create or update an Opaque Secret with the given plaintext key-value data.
    """
    b64_data = {
        k: base64.b64encode(v.encode("utf-8")).decode("utf-8") for k, v in data.items()
    }
    manifest = {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": secret_name,
            "namespace": namespace,
            "labels": labels or {},
        },
        "type": "Opaque",
        "data": b64_data,
    }
    await apply_manifest(manifest)
