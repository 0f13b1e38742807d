"""Decoding of the registry credentials that are passed through to the image
pull.

"""
import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any
from typing import Dict

from pytest_testcontainer.errors import RequestValidationError

#: registry that docker assumes for image references without a registry host
DOCKER_HUB = "https://index.docker.io/v1/"


@dataclass(frozen=True)
class RegistryCredential:
    """Username and password for a container registry."""

    username: str
    password: str

    #: the registry to authenticate against, empty if it should be derived
    #: from the image reference
    server_address: str = ""

    @property
    def creds(self) -> str:
        """The credentials in the form ``$user:$password`` as expected by
        :command:`podman pull --creds`.

        """
        return f"{self.username}:{self.password}"

    def docker_config(self, image: str) -> Dict[str, Any]:
        """Returns the contents of a docker :file:`config.json` that
        authenticates the pull of ``image``.

        """
        server = self.server_address or registry_from_image(image)
        return {
            "auths": {
                server: {
                    "auth": base64.b64encode(self.creds.encode()).decode()
                }
            }
        }

    def __repr__(self) -> str:
        return (
            f"RegistryCredential(username={self.username!r}, "
            f"server_address={self.server_address!r})"
        )

    @staticmethod
    def parse(registry_cred: str) -> "RegistryCredential":
        """Parse a credential string which is either ``$user:$password`` or the
        base64 (url-safe or standard) encoded json authentication object of the
        Docker Engine API (``{"username": …, "password": …,
        "serveraddress": …}``).

        """
        try:
            padded = registry_cred + "=" * (-len(registry_cred) % 4)
            decoded = base64.urlsafe_b64decode(
                padded.replace("+", "-").replace("/", "_")
            )
            auth = json.loads(decoded)
        except (binascii.Error, UnicodeDecodeError, ValueError):
            auth = None

        if isinstance(auth, dict):
            if "username" not in auth or "password" not in auth:
                raise RequestValidationError(
                    "The registry authentication object needs a username "
                    "and a password"
                )
            return RegistryCredential(
                username=auth["username"],
                password=auth["password"],
                server_address=auth.get("serveraddress", ""),
            )

        username, sep, password = registry_cred.partition(":")
        if not sep or not username:
            raise RequestValidationError(
                "Registry credentials must be either $user:$password or a "
                "base64 encoded authentication object"
            )
        return RegistryCredential(username=username, password=password)


def registry_from_image(image: str) -> str:
    """Returns the registry host of an image reference, following the rules of
    the docker reference grammar: the first path component is a registry if
    it contains a ``.`` or a ``:`` or is ``localhost``.

    >>> registry_from_image("registry.opensuse.org/opensuse/leap:15.5")
    'registry.opensuse.org'
    >>> registry_from_image("library/postgres")
    'https://index.docker.io/v1/'

    """
    first, sep, _ = image.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first
    return DOCKER_HUB
