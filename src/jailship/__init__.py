"""
jailship - Blue/green deployments to FreeBSD jails over SSH
"""

__version__ = "0.1.0"

from .core import Deployer
from .errors import JailshipError

__all__ = ["Deployer", "JailshipError"]
