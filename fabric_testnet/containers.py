# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import io
import tarfile

import docker

from fabric_testnet.concurrency import StoppableThread

from loguru import logger as LOG

# How long stopping the log forwarder waits for the stream to close
LOG_STREAMER_JOIN_TIMEOUT_S = 5


class ContainerNotFoundError(Exception):
    def __init__(self, container_id):
        super().__init__(f"No running container with id {container_id}")
        self.container_id = container_id


class PortNotPublishedError(Exception):
    def __init__(self, private_port, container_id=None):
        super().__init__(
            f"Container port {private_port}/tcp has no host port binding (container {container_id})"
        )
        self.private_port = private_port
        self.container_id = container_id


class FileRetrievalError(Exception):
    def __init__(self, path, reason):
        super().__init__(f"Could not retrieve {path} from container: {reason}")
        self.path = path


def pull_image(docker_client, image):
    try:
        docker_client.images.get(image)
        LOG.debug(f"Image {image} is already present")
    except docker.errors.ImageNotFound:
        LOG.info(f"Pulling image {image}")
        docker_client.images.pull(image)


def stop_container(container):
    try:
        container.stop()
        LOG.info(f"Stopped container {container.id[:12]}")
    except docker.errors.NotFound:
        pass


def get_container_info(docker_client, container_id):
    """
    Returns the runtime's listing entry for a running container: its status
    string ("Status"), published ports ("Ports") and network settings.
    """
    for info in docker_client.api.containers(filters={"id": container_id}):
        if info["Id"] == container_id:
            return info
    raise ContainerNotFoundError(container_id)


def get_public_port(private_port, container_info):
    for port in container_info.get("Ports") or []:
        if (
            port.get("PrivatePort") == private_port
            and port.get("Type", "tcp") == "tcp"
            and port.get("PublicPort")
        ):
            host_port = int(port["PublicPort"])
            LOG.debug(f"Container port {private_port} is published on {host_port}")
            return host_port
    raise PortNotPublishedError(private_port, container_info.get("Id"))


def get_container_internal_ip(container_info):
    networks = container_info.get("NetworkSettings", {}).get("Networks") or {}
    for name, network in networks.items():
        if network.get("IPAddress"):
            LOG.debug(f"Container IP on network {name}: {network['IPAddress']}")
            return network["IPAddress"]
    raise ValueError(f"Container {container_info.get('Id')} has no IP address")


def pull_file(container, path) -> bytes:
    """
    Reads a single file out of a running container's filesystem, via the
    runtime's archive API (no shell required in the container).
    """
    try:
        bits, _ = container.get_archive(path)
        archive = io.BytesIO(b"".join(bits))
    except docker.errors.NotFound as e:
        raise FileRetrievalError(path, "no such file") from e
    except docker.errors.APIError as e:
        raise FileRetrievalError(path, e.explanation or str(e)) from e

    try:
        with tarfile.open(fileobj=archive) as tar:
            member = tar.next()
            if member is None or not member.isfile():
                raise FileRetrievalError(path, "not a regular file")
            contents = tar.extractfile(member).read()
    except tarfile.TarError as e:
        raise FileRetrievalError(path, f"corrupt archive: {e}") from e

    LOG.debug(f"Pulled {path} ({len(contents)} bytes)")
    return contents


class ContainerLogStreamer(StoppableThread):
    """Forwards the output of a container to the logger, until the container stops"""

    def __init__(self, container, tag, level="INFO"):
        super().__init__(name=f"logs-{container.id[:12]}")
        self.container = container
        self.tag = tag
        self.level = level

    def _emit(self, line: bytes):
        text = line.decode(errors="replace").rstrip("\r")
        LOG.log(self.level, f"{self.tag} {text}")

    def run(self):
        # Chunks are not aligned on line boundaries
        pending = b""
        try:
            for chunk in self.container.logs(stream=True, follow=True):
                if self.is_stopped():
                    break
                *lines, pending = (pending + chunk).split(b"\n")
                for line in lines:
                    self._emit(line)
        except docker.errors.APIError as e:
            LOG.debug(f"{self.tag} log stream closed: {e}")
        if pending:
            self._emit(pending)

    def stop(self, timeout=LOG_STREAMER_JOIN_TIMEOUT_S):
        super().stop()
        if self.is_alive():
            self.join(timeout)
            if self.is_alive():
                LOG.warning(f"{self.tag} log stream still open after {timeout}s")
