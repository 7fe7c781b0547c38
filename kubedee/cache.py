"""Version-scoped cache of third-party release artifacts.

Artifacts are downloaded once per (tool, version) and hard-linked into
cluster root filesystems from there. A cache entry only counts as present
when every expected file exists, so an interrupted fetch is redone in full
on the next call.
"""

import os
import shutil
import tarfile
import tempfile
from pathlib import Path, PurePosixPath

import requests
from filelock import FileLock, Timeout

from kubedee.config import CacheConfig
from kubedee.exceptions import CopyError, FetchError
from kubedee.logging_config import get_logger
from kubedee.models.artifact import ArchiveKind, CachedArtifact

logger = get_logger(__name__)

DOWNLOAD_TIMEOUT = 60
CHUNK_SIZE = 1024 * 1024


def link_or_copy(source: Path, target: Path) -> None:
    """Hard-link source to target, copying when linking is not possible.

    Raises:
        CopyError: If neither a link nor a copy can be made
    """
    source = Path(source)
    target = Path(target)
    if target.exists() or target.is_symlink():
        target.unlink()
    try:
        os.link(source, target)
        return
    except OSError as e:
        logger.debug(f"Hard link {source} -> {target} failed ({e}), copying instead")
    try:
        shutil.copy2(source, target)
    except OSError as e:
        raise CopyError(f"Failed to copy '{source}' to '{target}'", str(e))


class ArtifactCache:
    """Cache of downloaded artifacts rooted at a version-scoped directory."""

    def __init__(
        self,
        config: CacheConfig,
        session: requests.Session | None = None,
        lock_timeout: float = 600,
    ):
        """Initialize the cache.

        Args:
            config: Cache and lock directories
            session: HTTP session used for downloads
            lock_timeout: Seconds to wait for another process fetching the same artifact
        """
        self.config = config
        self.session = session or requests.Session()
        self.lock_timeout = lock_timeout

    def artifact_dir(self, artifact: CachedArtifact) -> Path:
        return self.config.cache_dir / artifact.tool / artifact.version

    def expected_paths(self, artifact: CachedArtifact) -> set[Path]:
        cache_dir = self.artifact_dir(artifact)
        return {cache_dir / name for name in artifact.files}

    def is_cached(self, artifact: CachedArtifact) -> bool:
        """Check whether every expected file of the artifact is present."""
        return all(path.is_file() for path in self.expected_paths(artifact))

    def ensure(self, artifact: CachedArtifact) -> set[Path]:
        """Make sure the artifact is cached and return its expected files.

        Args:
            artifact: The artifact to fetch

        Returns:
            Paths of the expected files inside the cache

        Raises:
            FetchError: If downloading or unpacking fails
        """
        if self.is_cached(artifact):
            logger.debug(f"Cache hit for {artifact}")
            return self.expected_paths(artifact)

        self.config.lock_dir.mkdir(parents=True, exist_ok=True)
        lock_path = self.config.lock_dir / f"cache-{artifact.tool}-{artifact.version}.lock"
        try:
            with FileLock(str(lock_path), timeout=self.lock_timeout):
                # Another process may have finished the fetch while we waited
                if not self.is_cached(artifact):
                    self._fetch(artifact)
        except Timeout:
            raise FetchError(
                f"Timed out waiting for lock on {artifact}",
                f"Another kubedee process holds {lock_path}",
            )

        return self.expected_paths(artifact)

    def stage(self, artifact: CachedArtifact, target_dir: Path, files: list[str] | None = None) -> None:
        """Link cached files of an artifact into a target directory.

        Args:
            artifact: A cached artifact
            target_dir: Destination directory, created if missing
            files: Subset of file names to stage, all cached files by default

        Raises:
            CopyError: If a file is missing or cannot be linked
        """
        cache_dir = self.artifact_dir(artifact)
        if files is None:
            files = sorted(p.name for p in cache_dir.iterdir() if p.is_file())
        target_dir.mkdir(parents=True, exist_ok=True)
        for name in files:
            source = cache_dir / name
            if not source.is_file():
                raise CopyError(f"Failed to copy '{source}' to '{target_dir}'", "File not found in cache")
            link_or_copy(source, target_dir / name)

    def _fetch(self, artifact: CachedArtifact) -> None:
        cache_dir = self.artifact_dir(artifact)
        tmp_dir = Path(tempfile.mkdtemp(prefix="kubedee-"))
        try:
            logger.info(f"Fetch {artifact.tool} {artifact.version} ...")
            archive = self._download(artifact, tmp_dir)

            extract_dir = tmp_dir / "extract"
            extract_dir.mkdir()
            if artifact.kind == ArchiveKind.TAR:
                self._extract(artifact, archive, extract_dir)
            else:
                archive.rename(extract_dir / artifact.files[0])

            # Start from an empty directory so no stale file survives a re-fetch
            if cache_dir.exists():
                shutil.rmtree(cache_dir)
            cache_dir.mkdir(parents=True)

            names = list(artifact.files)
            if artifact.include_all:
                names = sorted({p.name for p in extract_dir.iterdir() if p.is_file()} | set(names))
            for name in names:
                source = extract_dir / name
                if not source.is_file():
                    raise FetchError(f"Failed to fetch {artifact}", f"'{name}' not found in {artifact.archive_name}")
                if artifact.executable and artifact.kind == ArchiveKind.BINARY:
                    source.chmod(0o755)
                try:
                    link_or_copy(source, cache_dir / name)
                except CopyError as e:
                    raise FetchError(f"Failed to cache {artifact}", e.message)
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

        logger.debug(f"Cached {artifact} in {cache_dir}")

    def _download(self, artifact: CachedArtifact, tmp_dir: Path) -> Path:
        url = artifact.download_url
        target = tmp_dir / artifact.archive_name
        logger.debug(f"Downloading {url}")
        try:
            with self.session.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT) as response:
                response.raise_for_status()
                with open(target, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
        except requests.RequestException as e:
            raise FetchError(f"Failed to download {artifact}", f"{url}: {e}")
        except OSError as e:
            raise FetchError(f"Failed to write {artifact.archive_name}", str(e))
        return target

    def _extract(self, artifact: CachedArtifact, archive: Path, extract_dir: Path) -> None:
        try:
            with tarfile.open(archive) as tar:
                for member in tar.getmembers():
                    if not member.isfile():
                        continue
                    relative = _strip_path(member.name, artifact.strip_components)
                    if relative is None:
                        continue
                    target = extract_dir.joinpath(*relative.parts)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    source = tar.extractfile(member)
                    if source is None:
                        continue
                    with source, open(target, "wb") as f:
                        shutil.copyfileobj(source, f)
                    target.chmod(member.mode & 0o777)
        except (tarfile.TarError, OSError) as e:
            raise FetchError(f"Failed to extract {artifact.archive_name}", str(e))


def _strip_path(name: str, strip_components: int) -> PurePosixPath | None:
    """Drop leading path components, rejecting paths that escape the target."""
    parts = [p for p in PurePosixPath(name).parts if p not in ("", ".")]
    if any(p == ".." or p.startswith("/") for p in parts):
        return None
    parts = parts[strip_components:]
    if not parts:
        return None
    return PurePosixPath(*parts)
