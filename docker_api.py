"""Docker Engine API client.

Talks HTTP directly to the engine, over the mounted Unix socket by default
or over TCP (optionally with TLS) when ``DOCKER_HOST`` says so.  Responses
are converted into ``ContainerRecord`` / ``ImageRecord`` values; every
failure surfaces as a ``DockerAPIError`` naming the operation that failed.
"""

import copy
import http.client
import json
import logging
import os
import re
import socket
import ssl
import urllib.parse
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from models import ContainerRecord, ImageRecord
from names import short_id

logger = logging.getLogger("harborbuddy.docker")

# Engine API version understood by Docker 20.10 and later
API_VERSION = "v1.41"
DEFAULT_SOCKET = "/var/run/docker.sock"
DANGLING_TAG = "<none>:<none>"

# Endpoint fields that describe a live attachment rather than its settings
_RUNTIME_ENDPOINT_FIELDS = (
    "NetworkID", "EndpointID", "Gateway", "IPAddress", "IPPrefixLen",
    "IPv6Gateway", "GlobalIPv6Address", "GlobalIPv6PrefixLen", "DNSNames",
)


class DockerAPIError(Exception):
    """Error from the Docker Engine API.

    ``status`` is the HTTP status, or 0 when the engine could not be reached.
    ``operation`` describes the call that failed, e.g. ``pull image nginx``.
    """

    def __init__(self, status: int, message: str, operation: str = ""):
        self.status = status
        self.message = message
        self.operation = operation
        text = f"Docker API error {status}: {message}"
        if operation:
            text = f"failed to {operation}: {text}"
        super().__init__(text)

    def with_operation(self, operation: str) -> "DockerAPIError":
        return DockerAPIError(self.status, self.message, operation)


class UnixHTTPConnection(http.client.HTTPConnection):
    """HTTPConnection subclass that connects via a Unix domain socket."""

    def __init__(self, socket_path: str, timeout: int = 30):
        # host is unused for the actual connection but required by HTTPConnection
        super().__init__("localhost", timeout=timeout)
        self._socket_path = socket_path

    def connect(self):
        self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.sock.settimeout(self.timeout)
        self.sock.connect(self._socket_path)


def split_reference(reference: str) -> Tuple[str, str]:
    """Split an image reference into the ``fromImage`` and ``tag`` pull parameters.

    A digest-pinned reference is pulled as-is with an empty tag; a reference
    without a tag gets ``latest``.  A ``:`` before the last ``/`` belongs to a
    registry port, not a tag.
    """
    if "@" in reference:
        return reference, ""
    name, sep, tag = reference.rpartition(":")
    if sep and "/" not in tag:
        return name, tag
    return reference, "latest"


def parse_engine_time(value: Any) -> Optional[datetime]:
    """Parse engine timestamps: RFC 3339 strings (nanosecond precision) or Unix seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    match = re.match(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(\.\d+)?(Z|[+-]\d{2}:\d{2})?$", value)
    if not match:
        return None
    base, fraction, offset = match.groups()
    fraction = (fraction or ".0")[:7]
    if not offset or offset == "Z":
        offset = "+00:00"
    return datetime.fromisoformat(f"{base}{fraction}{offset}")


def is_dangling(repo_tags: Optional[List[str]]) -> bool:
    return not repo_tags or repo_tags == [DANGLING_TAG]


def image_is_id(summary: Dict[str, Any]) -> bool:
    """True when a container list entry names its image by id, not reference."""
    image = summary.get("Image") or ""
    return image.startswith("sha256:") or (bool(image) and image == summary.get("ImageID"))


def container_from_summary(data: Dict[str, Any]) -> ContainerRecord:
    """Build a shallow record from a ``GET /containers/json`` entry."""
    names = data.get("Names") or []
    return ContainerRecord(
        id=data["Id"],
        name=names[0].lstrip("/") if names else "",
        image=data.get("Image", ""),
        image_id=data.get("ImageID", ""),
        labels=data.get("Labels") or {},
        running=data.get("State", "running") == "running",
        created=parse_engine_time(data.get("Created")),
    )


def container_from_inspect(data: Dict[str, Any]) -> ContainerRecord:
    """Build a full record (with recreate-config) from ``docker inspect`` output."""
    config = data.get("Config") or {}
    state = data.get("State") or {}
    return ContainerRecord(
        id=data["Id"],
        name=(data.get("Name") or "").lstrip("/"),
        image=config.get("Image", ""),
        image_id=data.get("Image", ""),
        labels=config.get("Labels") or {},
        running=bool(state.get("Running")),
        created=parse_engine_time(data.get("Created")),
        config=config,
        host_config=data.get("HostConfig") or {},
        networks=(data.get("NetworkSettings") or {}).get("Networks") or {},
    )


def image_from_inspect(data: Dict[str, Any]) -> ImageRecord:
    repo_tags = data.get("RepoTags") or []
    return ImageRecord(
        id=data["Id"],
        repo_tags=repo_tags,
        dangling=is_dangling(repo_tags),
        created=parse_engine_time(data.get("Created")),
        size=data.get("Size") or 0,
        labels=(data.get("Config") or {}).get("Labels") or {},
    )


def image_from_summary(data: Dict[str, Any]) -> ImageRecord:
    repo_tags = data.get("RepoTags") or []
    return ImageRecord(
        id=data["Id"],
        repo_tags=repo_tags,
        dangling=is_dangling(repo_tags),
        created=parse_engine_time(data.get("Created")),
        size=data.get("Size") or 0,
        labels=data.get("Labels") or {},
    )


def _endpoint_settings(endpoint: Dict[str, Any], old_short_id: str) -> Dict[str, Any]:
    """Strip the live-attachment fields from an inspected endpoint."""
    settings = {k: v for k, v in endpoint.items()
                if k not in _RUNTIME_ENDPOINT_FIELDS and v not in (None, "", [], {})}
    aliases = [a for a in settings.get("Aliases") or [] if a != old_short_id]
    if aliases:
        settings["Aliases"] = aliases
    else:
        settings.pop("Aliases", None)
    # A MAC address belongs to the old container
    settings.pop("MacAddress", None)
    return settings


def build_create_config(record: ContainerRecord, image: str) -> Tuple[Dict[str, Any], Dict[str, Dict[str, Any]]]:
    """Build a ``POST /containers/create`` body that clones ``record`` onto ``image``.

    Returns the body and the networks to connect after creation (the engine
    accepts a single endpoint at create time on older API versions).
    """
    if not record.is_full:
        raise ValueError(f"container {record.name} has no recreate-config; inspect it first")

    config = copy.deepcopy(record.config)
    host_config = copy.deepcopy(record.host_config)
    old_short = short_id(record.id)

    network_mode = host_config.get("NetworkMode") or "default"
    shares_network_namespace = network_mode == "host" or network_mode.startswith("container:")

    body: Dict[str, Any] = config
    body["Image"] = image

    # The engine defaults the hostname to the short id; keep only explicit ones
    if shares_network_namespace or config.get("Hostname") == old_short:
        body.pop("Hostname", None)
    if shares_network_namespace:
        body.pop("ExposedPorts", None)
        body.pop("Domainname", None)
        host_config.pop("PortBindings", None)
        host_config.pop("PublishAllPorts", None)

    # PATH and HOSTNAME come from the new image and the new container
    env = [e for e in config.get("Env") or []
           if not e.startswith(("PATH=", "HOSTNAME="))]
    if env:
        body["Env"] = env
    else:
        body.pop("Env", None)

    body["HostConfig"] = host_config

    extra_networks: Dict[str, Dict[str, Any]] = {}
    networks = record.networks or {}
    if networks and network_mode not in ("host", "none") and not network_mode.startswith("container:"):
        ordered = sorted(networks, key=lambda n: n != network_mode)
        primary = ordered[0]
        body["NetworkingConfig"] = {
            "EndpointsConfig": {primary: _endpoint_settings(networks[primary], old_short)}
        }
        for name in ordered[1:]:
            extra_networks[name] = _endpoint_settings(networks[name], old_short)

    return body, extra_networks


class DockerClient:
    """Client for the Docker Engine API."""

    def __init__(self, host: Optional[str] = None, tls: bool = False,
                 cert_path: str = "", key_path: str = "", ca_path: str = ""):
        if not host:
            host = os.environ.get("DOCKER_HOST", "") or f"unix://{DEFAULT_SOCKET}"
        self.host = host
        self._ssl_context: Optional[ssl.SSLContext] = None

        if host.startswith("unix://"):
            self._socket_path: Optional[str] = host[len("unix://"):]
            self._netloc = ""
        elif host.startswith("/"):
            self._socket_path = host
            self._netloc = ""
        elif host.startswith(("tcp://", "http://", "https://")):
            self._socket_path = None
            self._netloc = urllib.parse.urlparse(host).netloc
            if tls or host.startswith("https://"):
                self._ssl_context = self._build_ssl_context(cert_path, key_path, ca_path)
        else:
            raise ValueError(f"unsupported docker host: {host}")

    @staticmethod
    def _build_ssl_context(cert_path: str, key_path: str, ca_path: str) -> ssl.SSLContext:
        cert_dir = os.environ.get("DOCKER_CERT_PATH", "")
        if cert_dir and not (cert_path or key_path or ca_path):
            cert_path = os.path.join(cert_dir, "cert.pem")
            key_path = os.path.join(cert_dir, "key.pem")
            ca_path = os.path.join(cert_dir, "ca.pem")
        if not (cert_path and key_path and ca_path):
            logger.warning(
                "TLS enabled but no certificate paths provided; "
                "using system trust store without a client certificate"
            )
        context = ssl.create_default_context(cafile=ca_path or None)
        if cert_path and key_path:
            context.load_cert_chain(cert_path, key_path)
        return context

    def _connection(self, timeout: int) -> http.client.HTTPConnection:
        if self._socket_path is not None:
            return UnixHTTPConnection(self._socket_path, timeout=timeout)
        if self._ssl_context is not None:
            return http.client.HTTPSConnection(self._netloc, timeout=timeout,
                                               context=self._ssl_context)
        return http.client.HTTPConnection(self._netloc, timeout=timeout)

    def _request(self, method: str, path: str, body: Any = None,
                 query: Optional[Dict[str, str]] = None,
                 timeout: int = 30, stream: bool = False) -> Any:
        """Send one request to the engine on a fresh connection.

        Returns the decoded JSON body, or None for empty and 204 replies.
        With ``stream=True`` the NDJSON progress of ``POST /images/create``
        is read to the end and the first error object is raised.  Transport
        failures become ``DockerAPIError`` with status 0.
        """
        url = f"/{API_VERSION}{path}"
        if query:
            url += "?" + urllib.parse.urlencode(query)

        headers: Dict[str, str] = {}
        encoded_body: Optional[bytes] = None

        if body is not None:
            encoded_body = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"

        conn = self._connection(timeout)
        try:
            conn.request(method, url, body=encoded_body, headers=headers)
            response = conn.getresponse()

            if stream:
                data = response.read().decode("utf-8", errors="replace")
                if response.status >= 400:
                    raise DockerAPIError(response.status, data.strip())
                # Errors during a pull arrive as objects in the NDJSON stream
                for line in data.strip().split("\n"):
                    if not line:
                        continue
                    try:
                        obj = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if isinstance(obj, dict) and "error" in obj:
                        raise DockerAPIError(
                            response.status or 500,
                            (obj.get("errorDetail") or {}).get("message", obj["error"])
                        )
                return None

            raw = response.read().decode("utf-8", errors="replace")

            if response.status == 204:
                return None

            if response.status >= 400:
                try:
                    err = json.loads(raw)
                    msg = err.get("message", raw)
                except (json.JSONDecodeError, AttributeError):
                    msg = raw
                raise DockerAPIError(response.status, msg)

            if not raw:
                return None

            return json.loads(raw)
        except (OSError, http.client.HTTPException) as e:
            raise DockerAPIError(0, f"cannot reach Docker engine at {self.host}: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _operation(self, operation: str):
        try:
            yield
        except DockerAPIError as e:
            raise e.with_operation(operation) from e

    # ── Daemon ────────────────────────────────────────────────────

    def ping(self) -> None:
        with self._operation("ping docker daemon"):
            self._request("GET", "/_ping")

    # ── Image operations ──────────────────────────────────────────

    def pull_image(self, reference: str) -> ImageRecord:
        """Pull an image and return what the engine now has under that reference.

        Equivalent to ``docker pull`` followed by ``docker image inspect``.
        Uses a 300 s timeout for large images.
        """
        from_image, tag = split_reference(reference)
        query = {"fromImage": from_image}
        if tag:
            query["tag"] = tag
        with self._operation(f"pull image {reference}"):
            self._request("POST", "/images/create", query=query, timeout=300, stream=True)
        return self.inspect_image(reference)

    def inspect_image(self, reference: str) -> ImageRecord:
        with self._operation(f"inspect image {reference}"):
            data = self._request("GET", f"/images/{reference}/json")
        return image_from_inspect(data)

    def list_images(self) -> List[ImageRecord]:
        with self._operation("list images"):
            result = self._request("GET", "/images/json")
        return [image_from_summary(img) for img in result or []]

    def list_dangling_images(self) -> List[ImageRecord]:
        filters = json.dumps({"dangling": ["true"]})
        with self._operation("list dangling images"):
            result = self._request("GET", "/images/json", query={"filters": filters})
        images = [image_from_summary(img) for img in result or []]
        for image in images:
            image.dangling = True
        return images

    def remove_image(self, image_id: str) -> bool:
        """Remove an image.  Returns True on success, False on 404/409.

        Images still used by a container are never forced out.
        """
        try:
            with self._operation(f"remove image {short_id(image_id)}"):
                self._request("DELETE", f"/images/{image_id}", query={"noprune": "false"})
            return True
        except DockerAPIError as e:
            if e.status in (404, 409):
                return False
            raise

    # ── Container operations ──────────────────────────────────────

    def list_containers(self) -> List[ContainerRecord]:
        """List running containers as shallow records.

        The list reports a bare image id instead of the reference once the
        container's tag points at another image; those entries are inspected
        to recover the reference from ``Config.Image``.
        """
        with self._operation("list containers"):
            result = self._request("GET", "/containers/json")

        records = []
        for summary in result or []:
            record = container_from_summary(summary)
            if image_is_id(summary):
                try:
                    record.image = self.inspect_container(record.id).image
                except DockerAPIError as e:
                    if e.status != 404:
                        raise
                    # Removed since it was listed
                    continue
            records.append(record)
        return records

    def inspect_container(self, container_id: str) -> ContainerRecord:
        """Inspect a container, returning a full record."""
        with self._operation(f"inspect container {container_id}"):
            data = self._request("GET", f"/containers/{container_id}/json")
        return container_from_inspect(data)

    def stop_container(self, container_id: str, timeout: int = 10) -> None:
        with self._operation(f"stop container {container_id}"):
            self._request(
                "POST", f"/containers/{container_id}/stop",
                query={"t": str(timeout)},
                timeout=timeout + 30,
            )

    def start_container(self, container_id: str) -> None:
        with self._operation(f"start container {container_id}"):
            self._request("POST", f"/containers/{container_id}/start")

    def remove_container(self, container_id: str, force: bool = True, timeout: int = 120) -> None:
        query = {"force": "true"} if force else None
        with self._operation(f"remove container {container_id}"):
            self._request("DELETE", f"/containers/{container_id}", query=query, timeout=timeout)

    def rename_container(self, container_id: str, new_name: str) -> None:
        with self._operation(f"rename container {container_id} to {new_name}"):
            self._request("POST", f"/containers/{container_id}/rename",
                          query={"name": new_name})

    def connect_network(self, network: str, container_id: str,
                        endpoint_config: Optional[Dict[str, Any]] = None) -> None:
        body: Dict[str, Any] = {"Container": container_id}
        if endpoint_config:
            body["EndpointConfig"] = endpoint_config
        with self._operation(f"connect container {container_id} to network {network}"):
            self._request("POST", f"/networks/{network}/connect", body=body)

    def _create(self, name: str, body: Dict[str, Any],
                extra_networks: Dict[str, Dict[str, Any]]) -> str:
        with self._operation(f"create container {name}"):
            result = self._request("POST", "/containers/create", body=body,
                                   query={"name": name})
        container_id = result["Id"]

        try:
            for network, endpoint in extra_networks.items():
                self.connect_network(network, container_id, endpoint)
        except DockerAPIError:
            try:
                self.remove_container(container_id)
            except DockerAPIError as rm_err:
                logger.warning(f"Could not remove half-created container {name}: {rm_err}")
            raise
        return container_id

    def create_container_like(self, old: ContainerRecord, image: str,
                              name: Optional[str] = None) -> str:
        """Create (but do not start) a clone of ``old`` running ``image``.

        The clone is named ``<old name>-new`` unless ``name`` is given.
        Returns the new container ID.
        """
        body, extra_networks = build_create_config(old, image)
        return self._create(name or f"{old.name}-new", body, extra_networks)

    def create_helper_container(self, original: ContainerRecord, image: str, name: str,
                                entrypoint: List[str],
                                labels: Optional[Dict[str, str]] = None) -> str:
        """Create a short-lived clone of ``original`` that runs ``entrypoint``.

        The clone keeps mounts and networks (so it can reach the engine) but
        publishes no ports, never restarts and is removed when it exits.
        """
        body, extra_networks = build_create_config(original, image)
        body["Entrypoint"] = entrypoint
        body["Cmd"] = []
        body.pop("Healthcheck", None)
        body.pop("ExposedPorts", None)
        body["Labels"] = {**(body.get("Labels") or {}), **(labels or {})}

        host_config = body["HostConfig"]
        host_config.pop("PortBindings", None)
        host_config["PublishAllPorts"] = False
        host_config["RestartPolicy"] = {"Name": "no"}
        host_config["AutoRemove"] = True
        return self._create(name, body, extra_networks)
