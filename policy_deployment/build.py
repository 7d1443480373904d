import base64
import binascii
import hashlib
import json
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, NamedTuple

from policy_deployment.constants import SUI
from policy_deployment.exceptions import BuildFailure
from policy_deployment.utils import normalize_object_id, object_id_to_bytes


class CompiledPackage(NamedTuple):
    """Output of a Move package build."""

    modules: List[str]  # base64 encoded bytecode
    dependencies: List[str]  # package ids
    digest: bytes

    @property
    def module_bytes(self) -> List[bytes]:
        return [base64.b64decode(module) for module in self.modules]


def compute_digest(modules: List[bytes], dependencies: List[str]) -> bytes:
    """
    Computes the digest of a package the way the chain does: the blake2b-256
    hashes of the modules and the raw dependency ids are sorted and hashed together.
    """
    components = [hashlib.blake2b(module, digest_size=32).digest() for module in modules]
    components.extend(object_id_to_bytes(dependency) for dependency in dependencies)
    components.sort()

    digest = hashlib.blake2b(digest_size=32)
    for component in components:
        digest.update(component)
    return digest.digest()


class Compiler(ABC):
    @abstractmethod
    def compile(self, path: Path) -> CompiledPackage:
        raise NotImplementedError


class SuiMoveCompiler(Compiler):
    """Builds Move packages with the Sui CLI."""

    def __init__(self, sui_binary: str = SUI):
        self.sui_binary = sui_binary

    def _command(self, path: Path) -> List[str]:
        return [
            self.sui_binary,
            "move",
            "build",
            "--dump-bytecode-as-base64",
            "--path",
            str(path),
        ]

    def compile(self, path: Path) -> CompiledPackage:
        print(f"Building Move package at {path}...")
        try:
            result = subprocess.run(
                self._command(path), capture_output=True, text=True, check=True
            )
        except FileNotFoundError:
            raise BuildFailure(f"'{self.sui_binary}' executable not found.")
        except subprocess.CalledProcessError as e:
            raise BuildFailure(
                f"Build of {path} failed with exit code {e.returncode}:\n{e.stderr}"
            )

        return parse_build_output(result.stdout)


def parse_build_output(output: str) -> CompiledPackage:
    """Parses the JSON emitted by `sui move build --dump-bytecode-as-base64`."""
    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        raise BuildFailure(f"Build output is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise BuildFailure("Build output is not a JSON object.")

    missing = [field for field in ("modules", "dependencies", "digest") if field not in data]
    if missing:
        raise BuildFailure(f"Build output is missing field(s): {', '.join(missing)}")

    modules = data["modules"]
    if not modules or not all(isinstance(module, str) for module in modules):
        raise BuildFailure("Build output contains no modules.")
    try:
        for module in modules:
            base64.b64decode(module, validate=True)
        dependencies = [normalize_object_id(dependency) for dependency in data["dependencies"]]
        digest = bytes(data["digest"])
    except (binascii.Error, ValueError, TypeError) as e:
        raise BuildFailure(f"Malformed build output: {e}")

    return CompiledPackage(modules=list(modules), dependencies=dependencies, digest=digest)
