# publisher.py
from __future__ import annotations

import json
import logging
import shutil
import urllib.error
import urllib.request
import uuid
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import quote, urljoin

from .errors import PublishError
from .model import Artifact, PublishedArtifact

logger = logging.getLogger(__name__)


class ArtifactStore(Protocol):
    def put(self, run_id: str, identity: str, path: Path) -> str:
        """Store the file under (run_id, identity), replacing any previous one. Returns its location."""
        ...


# ---------------------------------------------------------------------
# Local directory store
# ---------------------------------------------------------------------

class LocalArtifactStore:
    """
    Directory-backed store:
      root/
        <run_id>/
          <identity>/
            <archive file>
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser().resolve()

    def put(self, run_id: str, identity: str, path: Path) -> str:
        if "/" in identity or identity in ("", ".", ".."):
            raise PublishError(identity=identity, message="identity must be a plain name")

        target = self.root / run_id / identity
        staging = self.root / run_id / f".{identity}.{uuid.uuid4().hex}"
        try:
            staging.mkdir(parents=True)
            shutil.copy2(path, staging / path.name)
            # Replace whatever was published under this identity before.
            if target.exists():
                shutil.rmtree(target)
            staging.replace(target)
        except OSError as e:
            raise PublishError(identity=identity, message=f"store unreachable: {e}") from e
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        return str(target / path.name)


# ---------------------------------------------------------------------
# HTTP store (talks to matrixci.store)
# ---------------------------------------------------------------------

class HttpArtifactStore:
    """HTTP client for the matrixci artifact store service."""

    def __init__(self, base_url: str, timeout: float = 60.0):
        # Ensure base_url doesn't end with /
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def put(self, run_id: str, identity: str, path: Path) -> str:
        """
        Upload the archive body with PUT /runs/{run_id}/artifacts/{identity}.

        Raises:
            PublishError: network failure, non-2xx status or a bad reply
        """
        rel = f"runs/{quote(run_id, safe='')}/artifacts/{quote(identity, safe='')}"
        url = urljoin(self.base_url + "/", rel)

        try:
            data = path.read_bytes()
        except OSError as e:
            raise PublishError(identity=identity, message=f"cannot read archive: {e}") from e

        req = urllib.request.Request(
            url,
            data=data,
            headers={
                "Content-Type": "application/octet-stream",
                "X-Filename": path.name,
            },
            method="PUT",
        )

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                body = response.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise PublishError(identity=identity, message=f"HTTP {e.code} {e.reason}. {error_body}".strip()) from e
        except urllib.error.URLError as e:
            raise PublishError(identity=identity, message=f"store unreachable: {e.reason}") from e
        except OSError as e:
            raise PublishError(identity=identity, message=f"store unreachable: {e}") from e

        try:
            reply = json.loads(body) if body else {}
        except json.JSONDecodeError as e:
            raise PublishError(identity=identity, message=f"invalid JSON response: {e}") from e

        return reply.get("location") or url


# ---------------------------------------------------------------------
# Publisher
# ---------------------------------------------------------------------

class Publisher:
    def __init__(self, store: ArtifactStore):
        self.store = store

    def publish(self, run_id: str, identity: str, artifact: Optional[Artifact]) -> PublishedArtifact:
        """
        Hand a packaged artifact to the store under `identity`.

        Publishing the same identity twice in a run overwrites. Errors are not
        retried here; the store's own policy applies.
        """
        if artifact is None:
            raise PublishError(identity=identity, message="no packaged artifact to publish")
        if not artifact.path.is_file():
            raise PublishError(identity=identity, message=f"artifact file missing: {artifact.path}")

        location = self.store.put(run_id, identity, artifact.path)
        logger.info("[%s] published %s as %s -> %s", artifact.job_id, artifact.name, identity, location)
        return PublishedArtifact(identity=identity, location=location)
