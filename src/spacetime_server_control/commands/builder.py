"""Command text for the publish and generate operations."""

from typing import Optional

from ..lifecycle.models import BackendKind

CLI = "spacetime"
DEFAULT_CLIENT_PATH = "../Assets/Scripts/Server"


def build_publish_command(
    module_name: str, kind: BackendKind, delete_data: bool = False
) -> str:
    """Publish command targeting the server that matches the backend kind."""
    server = "maincloud" if kind is BackendKind.MANAGED_CLOUD else "local"
    command = f"{CLI} publish --server {server} {module_name}"
    if delete_data:
        command += " --delete-data -y"
    return command


def build_generate_command(out_dir: str, language: str) -> str:
    return f"{CLI} generate --out-dir {out_dir} --lang {language}"


def relative_client_path(client_directory: Optional[str]) -> str:
    """Output directory for generated bindings, relative to the module.

    The client project's ``Assets`` folder is addressed from the module
    directory, so any absolute path is cut down to ``../Assets/...``.
    """
    if not client_directory:
        return DEFAULT_CLIENT_PATH

    normalized = client_directory.replace("\\", "/")
    if normalized.startswith("../Assets"):
        return normalized

    assets_index = normalized.find("Assets/")
    if assets_index < 0:
        assets_index = normalized.find("Assets")
    if assets_index < 0:
        return DEFAULT_CLIENT_PATH

    relative_path = "../" + normalized[assets_index:]
    if " " in relative_path:
        return f'"{relative_path}"'
    return relative_path
