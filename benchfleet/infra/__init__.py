"""Cloud resources: EC2 access, SSH, provisioning and teardown."""

from .ec2 import Ec2Cloud
from .provisioner import ResourceProvisioner
from .ssh import RemoteHost
from .teardown import TeardownController

__all__ = ["Ec2Cloud", "RemoteHost", "ResourceProvisioner", "TeardownController"]
