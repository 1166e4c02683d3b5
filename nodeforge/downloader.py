"""Component package download and unpacking.

Packages live under ``<download_dir>/.<kind>/<version>/<arch>/``. Online, a
missing package is fetched from the package mirror; offline, it must already
have been pushed to the node.
"""

import logging
import os
import tarfile
from typing import List, Optional

import requests

from .errors import DownloadError

logger = logging.getLogger("nodeforge.downloader")

CONFIGS_FILENAME = "configs.tar.gz"
IMAGES_FILENAME = "images.tar.gz"
CHART_FILENAME = "charts.tgz"
MANIFEST_FILENAME = ".configs.list"


def package_dir(base_dir: str, kind: str, version: str, arch: str = "") -> str:
    parts = [base_dir, f".{kind}", version]
    if arch:
        parts.append(arch)
    return os.path.join(*parts)


def chart_path(base_dir: str, kind: str, version: str) -> str:
    """Where the unpacked chart of a package is found."""
    return os.path.join(package_dir(base_dir, kind, version), CHART_FILENAME)


class Downloader:
    """Creates package instances bound to a download location and mirror."""

    def __init__(self, base_dir: str = "/tmp", mirror_url: str = "", timeout: int = 300,
                 session: Optional[requests.Session] = None):
        self.base_dir = base_dir
        self.mirror_url = mirror_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> 'Downloader':
        return cls(
            base_dir=config.paths.download_dir,
            mirror_url=config.registry.package_mirror,
            timeout=config.registry.download_timeout,
        )

    def new_instance(self, kind: str, version: str, arch: str, online: bool, dry_run: bool) -> 'PackageInstance':
        if not kind or not version:
            raise DownloadError(f"package kind and version are required, got {kind!r} {version!r}")
        return PackageInstance(self, kind, version, arch, online, dry_run)


class PackageInstance:
    """One component package on this node."""

    def __init__(self, downloader: Downloader, kind: str, version: str, arch: str, online: bool, dry_run: bool):
        self.downloader = downloader
        self.kind = kind
        self.version = version
        self.arch = arch
        self.online = online
        self.dry_run = dry_run

    @property
    def pkg_dir(self) -> str:
        return package_dir(self.downloader.base_dir, self.kind, self.version, self.arch)

    def _url(self, filename: str) -> str:
        parts = [self.downloader.mirror_url, self.kind, self.version]
        if self.arch:
            parts.append(self.arch)
        return "/".join(parts + [filename])

    def fetch(self, filename: str, directory: Optional[str] = None) -> str:
        """Return the local path of a package file, downloading it when needed."""
        directory = directory or self.pkg_dir
        path = os.path.join(directory, filename)
        if self.dry_run or os.path.exists(path):
            return path
        if not self.online:
            raise DownloadError(f"offline package {path} for {self.kind} {self.version} is missing")
        if not self.downloader.mirror_url:
            raise DownloadError(f"no package mirror configured to download {self.kind} {self.version}")

        url = self._url(filename)
        logger.info(f"⬇️  Downloading {url}")
        os.makedirs(directory, exist_ok=True)
        tmp_path = path + ".part"
        try:
            with self.downloader.session.get(url, stream=True, timeout=self.downloader.timeout) as resp:
                resp.raise_for_status()
                with open(tmp_path, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=1 << 20):
                        f.write(chunk)
            os.replace(tmp_path, path)
        except (requests.RequestException, OSError) as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise DownloadError(f"download {url} failed: {e}") from e
        return path

    def download_and_unpack_configs(self, dest: str = "/") -> List[str]:
        """Download the configs archive and unpack it onto the node.

        The list of unpacked files is recorded so remove_configs can undo it.
        """
        path = self.fetch(CONFIGS_FILENAME)
        if self.dry_run:
            logger.debug(f"[dry-run] would unpack {path} into {dest}")
            return []
        extracted = unpack(path, dest)
        with open(os.path.join(self.pkg_dir, MANIFEST_FILENAME), "w") as f:
            f.write("\n".join(extracted))
        logger.debug(f"Unpacked {len(extracted)} file(s) of {self.kind} {self.version}")
        return extracted

    def remove_configs(self) -> None:
        """Remove files unpacked by download_and_unpack_configs and the archive itself."""
        if self.dry_run:
            return
        manifest = os.path.join(self.pkg_dir, MANIFEST_FILENAME)
        if os.path.exists(manifest):
            with open(manifest) as f:
                for name in filter(None, f.read().splitlines()):
                    if os.path.isfile(name) or os.path.islink(name):
                        os.remove(name)
            os.remove(manifest)
        archive = os.path.join(self.pkg_dir, CONFIGS_FILENAME)
        if os.path.exists(archive):
            os.remove(archive)

    def download_images(self) -> str:
        return self.fetch(IMAGES_FILENAME)

    def remove_images(self) -> None:
        if self.dry_run:
            return
        path = os.path.join(self.pkg_dir, IMAGES_FILENAME)
        if os.path.exists(path):
            os.remove(path)

    def download_chart(self) -> str:
        """Fetch the chart archive of the package (charts are not per-arch)."""
        directory = package_dir(self.downloader.base_dir, self.kind, self.version)
        return self.fetch(CHART_FILENAME, directory=directory)

    def remove_chart(self) -> None:
        if self.dry_run:
            return
        path = chart_path(self.downloader.base_dir, self.kind, self.version)
        if os.path.exists(path):
            os.remove(path)


def unpack(archive: str, dest: str) -> List[str]:
    """Extract a tar archive, refusing members that escape ``dest``."""
    extracted = []
    dest_root = os.path.realpath(dest)
    try:
        with tarfile.open(archive) as tar:
            members = []
            for member in tar.getmembers():
                target = os.path.realpath(os.path.join(dest_root, member.name))
                if os.path.isabs(member.name) or os.path.commonpath([dest_root, target]) != dest_root:
                    raise DownloadError(f"refusing to unpack {member.name} from {archive}")
                if member.issym() or member.islnk() or member.isdev():
                    logger.debug(f"Skipping link or device {member.name} in {archive}")
                    continue
                members.append(member)
                if member.isfile():
                    extracted.append(target)
            tar.extractall(dest_root, members=members)
    except (tarfile.TarError, OSError) as e:
        raise DownloadError(f"unpack {archive} failed: {e}") from e
    return extracted
