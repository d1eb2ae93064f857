"""Thin EC2 wrapper: the only module that talks to the AWS API.

Everything benchfleet creates is tagged so it can be found again later
without any local state:

- ``benchfleet:managed = true`` on every instance
- ``benchfleet:run-id = <run identity>``
- ``benchfleet:instance-size = <instance type>``
"""

from typing import Any

import boto3
from botocore.exceptions import ClientError

TAG_MANAGED = "benchfleet:managed"
TAG_RUN_ID = "benchfleet:run-id"
TAG_SIZE = "benchfleet:instance-size"

# Instance states that still cost money or still hold the security group
LIVE_STATES = ["pending", "running", "stopping", "stopped", "shutting-down"]

SSH_PORT = 22


def error_code(error: ClientError) -> str:
    """Return the AWS error code of a ClientError."""
    return str(error.response.get("Error", {}).get("Code", ""))


def tag_value(resource: dict[str, Any], key: str) -> str | None:
    """Return the value of tag ``key`` on a described EC2 resource."""
    for tag in resource.get("Tags", []) or []:
        if tag.get("Key") == key:
            return tag.get("Value")
    return None


class Ec2Cloud:
    """Security groups and tagged instances in one region."""

    def __init__(self, region: str, client: Any = None):
        self.region = region
        self.client = client or boto3.client("ec2", region_name=region)

    # Security groups -------------------------------------------------

    def find_security_group(self, name: str) -> dict[str, Any] | None:
        """Return the security group named ``name``, or None."""
        response = self.client.describe_security_groups(
            Filters=[{"Name": "group-name", "Values": [name]}]
        )
        groups = response.get("SecurityGroups", [])
        return groups[0] if groups else None

    def create_security_group(self, name: str, description: str) -> tuple[str, bool]:
        """
        Create the security group unless it already exists.

        A concurrent creator winning the race surfaces as
        ``InvalidGroup.Duplicate``; that is resolved by looking the group up.

        Returns:
            (group_id, created)
        """
        try:
            response = self.client.create_security_group(
                GroupName=name, Description=description
            )
            return response["GroupId"], True
        except ClientError as e:
            if error_code(e) != "InvalidGroup.Duplicate":
                raise
        group = self.find_security_group(name)
        if group is None:
            raise RuntimeError(f"Security group {name} reported duplicate but not found")
        return group["GroupId"], False

    def authorize_ssh(self, group_id: str, cidr: str) -> bool:
        """Allow SSH from ``cidr``. Returns False if the rule already existed."""
        try:
            self.client.authorize_security_group_ingress(
                GroupId=group_id,
                IpPermissions=[
                    {
                        "IpProtocol": "tcp",
                        "FromPort": SSH_PORT,
                        "ToPort": SSH_PORT,
                        "IpRanges": [
                            {"CidrIp": cidr, "Description": "benchfleet control plane"}
                        ],
                    }
                ],
            )
            return True
        except ClientError as e:
            if error_code(e) == "InvalidPermission.Duplicate":
                return False
            raise

    @staticmethod
    def allows_ssh_from(group: dict[str, Any], cidr: str) -> bool:
        """Check whether a described group already admits SSH from ``cidr``."""
        for permission in group.get("IpPermissions", []):
            if permission.get("IpProtocol") not in ("tcp", "-1"):
                continue
            if permission.get("IpProtocol") == "tcp" and not (
                permission.get("FromPort", 0) <= SSH_PORT <= permission.get("ToPort", 0)
            ):
                continue
            if any(r.get("CidrIp") == cidr for r in permission.get("IpRanges", [])):
                return True
        return False

    def delete_security_group(self, group_id: str) -> None:
        self.client.delete_security_group(GroupId=group_id)

    # Instances -------------------------------------------------------

    def run_instance(
        self,
        *,
        instance_type: str,
        ami_id: str,
        key_name: str,
        group_id: str | None,
        volume_size_gb: int,
        tags: dict[str, str],
    ) -> str:
        """Launch one instance and return its id."""
        params: dict[str, Any] = {
            "ImageId": ami_id,
            "InstanceType": instance_type,
            "KeyName": key_name,
            "MinCount": 1,
            "MaxCount": 1,
            # Ubuntu AMIs mount the root volume at /dev/sda1
            "BlockDeviceMappings": [
                {
                    "DeviceName": "/dev/sda1",
                    "Ebs": {
                        "VolumeSize": volume_size_gb,
                        "VolumeType": "gp3",
                        "DeleteOnTermination": True,
                    },
                }
            ],
            "TagSpecifications": [
                {
                    "ResourceType": "instance",
                    "Tags": [{"Key": k, "Value": v} for k, v in tags.items()],
                }
            ],
        }
        if group_id:
            params["SecurityGroupIds"] = [group_id]

        response = self.client.run_instances(**params)
        return str(response["Instances"][0]["InstanceId"])

    def find_instances(self, run_id: str | None = None) -> list[dict[str, Any]]:
        """
        Return live benchfleet instances, optionally limited to one run.

        Args:
            run_id: Run identity to match, or None for every managed instance
        """
        filters = [
            {"Name": f"tag:{TAG_MANAGED}", "Values": ["true"]},
            {"Name": "instance-state-name", "Values": LIVE_STATES},
        ]
        if run_id is not None:
            filters.append({"Name": f"tag:{TAG_RUN_ID}", "Values": [run_id]})

        instances: list[dict[str, Any]] = []
        paginator = self.client.get_paginator("describe_instances")
        for page in paginator.paginate(Filters=filters):
            for reservation in page.get("Reservations", []):
                instances.extend(reservation.get("Instances", []))
        return instances

    def describe_instance(self, instance_id: str) -> dict[str, Any] | None:
        response = self.client.describe_instances(InstanceIds=[instance_id])
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return instance
        return None

    def wait_until_running(self, instance_ids: list[str], timeout_s: float) -> None:
        """Block until the instances are running; raises WaiterError on timeout."""
        delay = 15
        self.client.get_waiter("instance_running").wait(
            InstanceIds=instance_ids,
            WaiterConfig={"Delay": delay, "MaxAttempts": max(1, int(timeout_s // delay))},
        )

    def terminate_instance(self, instance_id: str) -> None:
        self.client.terminate_instances(InstanceIds=[instance_id])

    def wait_until_terminated(self, instance_ids: list[str], timeout_s: float = 600) -> None:
        delay = 15
        self.client.get_waiter("instance_terminated").wait(
            InstanceIds=instance_ids,
            WaiterConfig={"Delay": delay, "MaxAttempts": max(1, int(timeout_s // delay))},
        )
