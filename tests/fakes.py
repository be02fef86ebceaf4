"""In-memory stand-ins for image handles, the image fetcher and the Docker client."""

from __future__ import annotations

import io
import tarfile
from pathlib import Path

from docker.errors import ImageNotFound, NotFound

from cnb_pack.errors import ImageNotFoundError


class FakeImage:
    def __init__(
        self,
        name: str,
        labels: dict[str, str] | None = None,
        env: dict[str, str] | None = None,
        found: bool = True,
    ) -> None:
        self._name = name
        self.labels = dict(labels or {})
        self.env_vars = dict(env or {})
        self._found = found
        self.layers: list[bytes] = []
        self.saved = False
        self.deleted = False
        self.save_error: Exception | None = None

    @property
    def name(self) -> str:
        return self._name

    def found(self) -> bool:
        return self._found

    def label(self, key: str) -> str:
        return self.labels.get(key, "")

    def set_label(self, key: str, value: str) -> None:
        self.labels[key] = value

    def env(self, key: str) -> str:
        return self.env_vars.get(key, "")

    def rename(self, name: str) -> None:
        self._name = name

    def add_layer(self, tar_path: str) -> None:
        # Scratch files are gone once save() returns; keep the bytes.
        self.layers.append(Path(tar_path).read_bytes())

    def layer_tar(self, index: int) -> tarfile.TarFile:
        return tarfile.open(fileobj=io.BytesIO(self.layers[index]), mode="r")

    def save(self) -> str:
        if self.save_error is not None:
            raise self.save_error
        self.saved = True
        return "sha256:" + "0" * 64

    def delete(self) -> None:
        self.deleted = True


class FakeFetcher:
    def __init__(self, *images: FakeImage) -> None:
        self.images = {img.name: img for img in images}
        self.calls: list[tuple[str, bool, bool]] = []

    def fetch(self, name: str, daemon: bool, pull: bool) -> FakeImage:
        self.calls.append((name, daemon, pull))
        image = self.images.get(name)
        if image is None:
            raise ImageNotFoundError(name, "on the daemon" if daemon else "in registry")
        return image


# --- Docker SDK ---------------------------------------------------------------


class FakeContainer:
    def __init__(self, client: FakeDockerClient, image: str, **kwargs) -> None:
        self.client = client
        self.image = image
        self.kwargs = kwargs
        self.command = kwargs.get("command") or []
        self.archives: list[tuple[str, bytes]] = []
        self.started = False
        self.stopped = False
        self.removed = False
        binary = self.command[0].rsplit("/", 1)[-1] if self.command else image
        self.binary = binary
        self.exit_code = client.exit_codes.get(binary, 0)
        self.output = client.outputs.get(binary, [])
        self.status = "created"
        self.mounts: dict[str, str] = {}
        for bind in kwargs.get("volumes") or []:
            source, _, target = bind.partition(":")
            self.mounts[target.split(":")[0]] = source

    def _resolve(self, path: str) -> tuple[dict[str, bytes], str]:
        for mount, volume in self.mounts.items():
            if path == mount or path.startswith(mount + "/"):
                return self.client.volumes.files.setdefault(volume, {}), path[len(mount) :].lstrip("/")
        raise KeyError(f"{path} is not on a mounted volume")

    def read(self, path: str) -> bytes | None:
        files, rel = self._resolve(path)
        return files.get(rel)

    def write(self, path: str, data: bytes) -> None:
        files, rel = self._resolve(path)
        files[rel] = data

    def delete(self, path: str) -> None:
        files, rel = self._resolve(path)
        files.pop(rel, None)

    def put_archive(self, path: str, data: bytes) -> bool:
        self.archives.append((path, data))
        with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tf:
            for member in tf.getmembers():
                if member.isfile():
                    target = path.rstrip("/") + "/" + member.name
                    self.write(target, tf.extractfile(member).read())
        return True

    def start(self) -> None:
        self.started = True
        script = self.client.scripts.get(self.binary)
        if script is not None:
            script(self)
        self.status = "running" if self.binary in self.client.hanging else "exited"

    def logs(self, stream: bool = False, follow: bool = False):
        return iter(self.output)

    def reload(self) -> None:
        pass

    def wait(self) -> dict:
        return {"StatusCode": self.exit_code}

    def stop(self, timeout: int = 10) -> None:
        self.stopped = True
        self.status = "exited"

    def remove(self, force: bool = False) -> None:
        if self.removed:
            raise NotFound("container already removed")
        self.removed = True


class FakeContainers:
    def __init__(self, client: FakeDockerClient) -> None:
        self.client = client
        self.created: list[FakeContainer] = []

    def create(self, image: str, **kwargs) -> FakeContainer:
        container = FakeContainer(self.client, image, **kwargs)
        self.created.append(container)
        return container


class FakeVolume:
    def __init__(self, volumes: FakeVolumes, name: str) -> None:
        self._volumes = volumes
        self.name = name

    def remove(self, force: bool = False) -> None:
        self._volumes.removed.append(self.name)
        self._volumes.existing.discard(self.name)


class FakeVolumes:
    def __init__(self) -> None:
        self.created: list[str] = []
        self.removed: list[str] = []
        self.existing: set[str] = set()
        self.files: dict[str, dict[str, bytes]] = {}

    def create(self, name: str, **kwargs) -> FakeVolume:
        self.created.append(name)
        self.existing.add(name)
        return FakeVolume(self, name)

    def get(self, name: str) -> FakeVolume:
        if name not in self.existing:
            raise NotFound(f"volume {name} not found")
        return FakeVolume(self, name)


class FakeDaemonImage:
    def __init__(self, name: str, labels: dict | None = None, env: list[str] | None = None) -> None:
        self.id = f"sha256:{abs(hash(name)):064x}"[:71]
        self.tags = [name]
        self.attrs = {"Config": {"Labels": dict(labels or {}), "Env": list(env or [])}}


class FakeImages:
    def __init__(self) -> None:
        self.existing: set[str] = set()
        self.stored: dict[str, FakeDaemonImage] = {}
        self.removed: list[str] = []
        self.pulled: list[str] = []
        self.pullable: dict[str, FakeDaemonImage] = {}
        self.builds: list[dict] = []

    def add(self, name: str, labels: dict | None = None, env: list[str] | None = None) -> FakeDaemonImage:
        image = FakeDaemonImage(name, labels, env)
        self.stored[name] = image
        self.existing.add(name)
        return image

    def get(self, name: str) -> FakeDaemonImage:
        if name not in self.stored:
            raise ImageNotFound(f"image {name} not found")
        return self.stored[name]

    def pull(self, name: str) -> FakeDaemonImage:
        self.pulled.append(name)
        if name not in self.pullable:
            raise NotFound(f"manifest for {name} not found")
        self.stored[name] = self.pullable[name]
        self.existing.add(name)
        return self.stored[name]

    def build(self, fileobj, tag: str, labels: dict | None = None, **kwargs):
        with tarfile.open(fileobj=fileobj, mode="r") as ctx:
            files = {m.name: ctx.extractfile(m).read() for m in ctx.getmembers()}
        self.builds.append({"tag": tag, "labels": labels, "files": files, **kwargs})
        base = next(iter(files["Dockerfile"].decode().splitlines()))
        parent = next((img for img in self.stored.values() if f"FROM {img.id}" == base), None)
        merged = dict(parent.attrs["Config"]["Labels"]) if parent else {}
        merged.update(labels or {})
        env = parent.attrs["Config"]["Env"] if parent else []
        image = self.add(tag, merged, env)
        return image, iter([{"stream": "Step 1/2 : FROM base\n"}])

    def remove(self, name: str, force: bool = False) -> None:
        if name not in self.existing:
            raise ImageNotFound(f"image {name} not found")
        self.existing.discard(name)
        self.stored.pop(name, None)
        self.removed.append(name)


class FakeDockerClient:
    def __init__(
        self,
        exit_codes: dict[str, int] | None = None,
        outputs: dict[str, list[bytes]] | None = None,
        hanging: set[str] | None = None,
        scripts: dict | None = None,
    ) -> None:
        self.exit_codes = exit_codes or {}
        self.outputs = outputs or {}
        self.hanging = hanging or set()
        # binary name -> callable(container), run when the container starts
        self.scripts = scripts or {}
        self.containers = FakeContainers(self)
        self.volumes = FakeVolumes()
        self.images = FakeImages()
