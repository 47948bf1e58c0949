"""Server registry for an integration run.

Maps test identities to cloud instances, reusing a running instance tagged
with the identity when one exists and creating one otherwise. Instances are
tagged with the owning user so the whole run can be torn down at the end.
"""

import fcntl
import hashlib
import threading
import time
import uuid
from pathlib import Path
from typing import Callable

import structlog

from .cloud_client import CloudClient
from .config import Settings
from .exceptions import KeyPairError, ProvisioningError
from .logs import integration_logger
from .models import NAME_TAG, PREPARED_TAG, USER_TAG, CleanupResult, Instance
from .readiness import ReadinessPoller

logger = structlog.get_logger()


class ServerRunner:
    """Common point of EC2 control shared by every case of a run."""

    def __init__(
        self,
        settings: Settings,
        client: CloudClient,
        poller: ReadinessPoller,
        key_name: str,
        key_file: Path,
        run_id: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.client = client
        self.poller = poller
        self.key_name = key_name
        self.key_file = key_file
        self.run_id = run_id or uuid.uuid4().hex
        self.sleep = sleep
        self.instances: dict[str, Instance] = {}
        self.log = integration_logger(settings.log_dir, "ServerRunner")
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def get_instance(self, server_name: str, image_id: str, flavor_id: str | None = None) -> Instance:
        """Return a ready instance for ``server_name``, creating it if needed.

        An identity already resolved by this runner returns the same object
        without another EC2 lookup until ``cleanup`` destroys it.

        Lookup and creation for one identity are serialized within the
        process, and the launch request carries a token derived from the run
        id, so concurrent workers of the same run end up sharing one instance.

        Raises:
            ProvisioningError: If a cloud API call fails.
            ReadinessTimeout: If a new instance never becomes reachable.
        """
        flavor = flavor_id or self.settings.flavor_id
        with self._lock_for(server_name):
            known = self.instances.get(server_name)
            if known is not None:
                return known

            found = self.client.find_instances(NAME_TAG, server_name)
            if found:
                instance = self._oldest(server_name, found)
                self.log.info(
                    "Reusing active server", name=server_name, instance_id=instance.instance_id
                )
                instance = self.poller.wait_until_ready(instance, grace_seconds=0)
            else:
                self.log.info(
                    "Starting server", name=server_name, image_id=image_id, flavor_id=flavor
                )
                instance = self.client.create_instance(
                    tags={NAME_TAG: server_name, USER_TAG: self.settings.user},
                    image_id=image_id,
                    flavor_id=flavor,
                    key_name=self.key_name,
                    client_token=self._client_token(server_name),
                )
                instance = self.poller.wait_until_ready(instance)

            self.log.info(
                "Server ready",
                name=server_name,
                instance_id=instance.instance_id,
                address=instance.public_ip_address,
            )
            self.instances[server_name] = instance
            return instance

    def mark_prepared(self, instance: Instance) -> None:
        """Tag the instance so later runs skip ``knife prepare``."""
        self.client.create_tags(instance.instance_id, {PREPARED_TAG: "true"})
        instance.tags[PREPARED_TAG] = "true"
        instance.prepared = True
        self.log.info("Marked server prepared", instance_id=instance.instance_id)

    def is_prepared(self, instance: Instance) -> bool:
        return instance.prepared

    def cleanup(self, owning_user: str | None = None, skip: bool | None = None) -> CleanupResult:
        """Destroy every running instance tagged with the owning user.

        With ``skip`` (default ``SKIP_DESTROY``) the instances are left
        running for inspection or reuse. Otherwise the operator gets
        ``CLEANUP_GRACE_SECONDS`` to press Ctrl-C before termination starts.
        """
        user = owning_user or self.settings.user
        skip = self.settings.skip_destroy if skip is None else skip
        found = self.client.find_instances(USER_TAG, user)
        result = CleanupResult(found=found)

        if skip:
            result.skipped = True
            logger.info(
                f"SKIP_DESTROY specified, leaving {len(found)} instances running",
                user=user,
                count=len(found),
            )
            return result

        if not found:
            logger.info("No integration instances to destroy", user=user)
            return result

        logger.warning(
            "About to terminate the following instances. Press Ctrl-C now to leave "
            "them running, or set SKIP_DESTROY=true to skip this step.",
            instances=[i.instance_id for i in found],
            grace_seconds=self.settings.cleanup_grace_seconds,
        )
        try:
            self.sleep(self.settings.cleanup_grace_seconds)
        except KeyboardInterrupt:
            result.cancelled = True
            logger.warning("Cleanup cancelled, leaving instances running", count=len(found))
            return result

        for instance in found:
            self.log.info(
                "Destroying server",
                instance_id=instance.instance_id,
                address=instance.public_ip_address,
            )
            self.client.terminate_instance(instance.instance_id)
            if instance.name:
                self.instances.pop(instance.name, None)
            result.destroyed.append(instance)

        logger.info("Destroyed integration instances", count=len(result.destroyed))
        return result

    def ensure_key_pair(self) -> Path:
        """Create the integration key pair unless its PEM file already exists.

        Workers of one run may call this at the same time, so creation happens
        under an exclusive lock on ``<key_file>.lock`` and the PEM file is
        checked again once the lock is held.
        """
        if self.key_file.exists():
            return self.key_file

        self.key_file.parent.mkdir(parents=True, exist_ok=True)
        lock_path = self.key_file.with_name(f"{self.key_file.name}.lock")
        with open(lock_path, "w") as lock:
            fcntl.flock(lock, fcntl.LOCK_EX)
            try:
                if self.key_file.exists():
                    logger.debug("Key pair created by another worker", path=str(self.key_file))
                    return self.key_file
                self._create_key_file()
            finally:
                fcntl.flock(lock, fcntl.LOCK_UN)
        return self.key_file

    def _create_key_file(self) -> None:
        try:
            material = self.client.create_key_pair(self.key_name)
        except ProvisioningError as e:
            raise KeyPairError(
                f"Unable to create KeyPair '{self.key_name}', please create the keypair "
                f"and save it to {self.key_file}"
            ) from e

        # Readers outside the lock only ever see a complete, private PEM file.
        partial = self.key_file.with_name(f"{self.key_file.name}.partial")
        partial.write_text(material)
        partial.chmod(0o600)
        partial.replace(self.key_file)
        logger.info("Created key pair", key_name=self.key_name, path=str(self.key_file))

    def _lock_for(self, server_name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(server_name, threading.Lock())

    def _client_token(self, server_name: str) -> str:
        # EC2 client tokens are limited to 64 ASCII characters.
        return hashlib.sha256(f"{self.run_id}:{server_name}".encode()).hexdigest()

    def _oldest(self, server_name: str, found: list[Instance]) -> Instance:
        if len(found) > 1:
            logger.warning(
                "Several running instances share one identity, using the oldest",
                name=server_name,
                instances=[i.instance_id for i in found],
            )
        return min(found, key=lambda i: (i.launch_time is None, i.launch_time or 0))
