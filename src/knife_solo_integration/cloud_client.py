"""EC2 client wrapper for the integration harness."""

from typing import Any

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from .config import CloudConfig, Settings
from .exceptions import ProvisioningError
from .models import Instance, InstanceState

logger = structlog.get_logger()


def _tag_list(tags: dict[str, str]) -> list[dict[str, str]]:
    return [{"Key": key, "Value": str(value)} for key, value in tags.items()]


class CloudClient:
    """Wrapper for the EC2 operations the harness uses.

    Every botocore failure is re-raised as ``ProvisioningError`` so callers
    only deal with the harness error taxonomy.
    """

    def __init__(self, cloud_config: CloudConfig, settings: Settings, ec2: Any = None) -> None:
        """Initialize the client, building a boto3 EC2 client unless one is given."""
        self.settings = settings
        self.key_name = cloud_config.aws.key_name
        self.region = cloud_config.aws.region or settings.aws_region
        if ec2 is None:
            session = boto3.Session(
                aws_access_key_id=cloud_config.aws.access_key,
                aws_secret_access_key=cloud_config.aws.secret,
                region_name=self.region,
            )
            ec2 = session.client("ec2")
        self.ec2 = ec2

    def find_instances(
        self, tag_key: str, tag_value: str, state: str = "running"
    ) -> list[Instance]:
        """List instances carrying ``tag_key=tag_value`` in the given state."""
        filters = [
            {"Name": f"tag:{tag_key}", "Values": [tag_value]},
            {"Name": "instance-state-name", "Values": [state]},
        ]
        try:
            paginator = self.ec2.get_paginator("describe_instances")
            instances = [
                Instance.from_ec2(data)
                for page in paginator.paginate(Filters=filters)
                for reservation in page.get("Reservations", [])
                for data in reservation.get("Instances", [])
            ]
        except (ClientError, BotoCoreError) as e:
            raise ProvisioningError(
                f"Failed to list instances tagged {tag_key}={tag_value}: {e}"
            ) from e

        logger.debug("Listed instances", tag=f"{tag_key}={tag_value}", count=len(instances))
        return instances

    def describe_instance(self, instance_id: str) -> Instance:
        """Fetch the current view of one instance."""
        try:
            response = self.ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            # Freshly launched instances can be briefly invisible to describe calls.
            if e.response.get("Error", {}).get("Code") == "InvalidInstanceID.NotFound":
                logger.debug("Instance not visible yet", instance_id=instance_id)
                return Instance(instance_id=instance_id, state=InstanceState.PENDING)
            raise ProvisioningError(f"Failed to describe instance {instance_id}: {e}") from e
        except BotoCoreError as e:
            raise ProvisioningError(f"Failed to describe instance {instance_id}: {e}") from e

        for reservation in response.get("Reservations", []):
            for data in reservation.get("Instances", []):
                return Instance.from_ec2(data)
        raise ProvisioningError(f"Instance {instance_id} not found")

    def create_instance(
        self,
        tags: dict[str, str],
        image_id: str,
        flavor_id: str,
        key_name: str,
        client_token: str | None = None,
    ) -> Instance:
        """Launch one instance with the given tags.

        ``client_token`` makes the launch idempotent: repeating a request with
        the same token returns the instance the first request created.
        """
        request: dict[str, Any] = {
            "ImageId": image_id,
            "InstanceType": flavor_id,
            "KeyName": key_name,
            "MinCount": 1,
            "MaxCount": 1,
            "TagSpecifications": [{"ResourceType": "instance", "Tags": _tag_list(tags)}],
        }
        if client_token:
            request["ClientToken"] = client_token

        try:
            response = self.ec2.run_instances(**request)
        except (ClientError, BotoCoreError) as e:
            raise ProvisioningError(f"Failed to launch {image_id} ({flavor_id}): {e}") from e

        instance = Instance.from_ec2(response["Instances"][0])
        instance.tags = {**tags, **instance.tags}
        logger.info(
            "Launched instance",
            instance_id=instance.instance_id,
            image_id=image_id,
            flavor_id=flavor_id,
        )
        return instance

    def create_tags(self, instance_id: str, tags: dict[str, str]) -> None:
        """Attach tags to an instance, overwriting existing values."""
        try:
            self.ec2.create_tags(Resources=[instance_id], Tags=_tag_list(tags))
        except (ClientError, BotoCoreError) as e:
            raise ProvisioningError(f"Failed to tag instance {instance_id}: {e}") from e

    def terminate_instance(self, instance_id: str) -> None:
        try:
            self.ec2.terminate_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as e:
            raise ProvisioningError(f"Failed to terminate instance {instance_id}: {e}") from e

    def create_key_pair(self, key_name: str) -> str:
        """Create a key pair and return its PEM private key material."""
        try:
            response = self.ec2.create_key_pair(KeyName=key_name, KeyFormat="pem")
        except (ClientError, BotoCoreError) as e:
            raise ProvisioningError(f"Failed to create key pair {key_name}: {e}") from e
        return str(response["KeyMaterial"])
