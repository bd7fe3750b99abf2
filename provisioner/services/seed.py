import logging
import shutil
import subprocess
from pathlib import Path

from provisioner.errors import SeedImageError


logger = logging.getLogger(__name__)

ISO_TOOLS = ["xorriso", "genisoimage", "mkisofs"]


def find_iso_tool(candidates: list[str] | None = None) -> str | None:
    for name in candidates or ISO_TOOLS:
        path = shutil.which(name)
        if path:
            return path
    return None


def build_seed_command(tool: str, iso_path: Path, files: list[Path]) -> list[str]:
    cmd = [tool]
    if Path(tool).name == "xorriso":
        cmd.extend(["-as", "mkisofs"])
    cmd.extend(
        [
            "-output",
            str(iso_path),
            "-volid",
            "cidata",
            "-joliet",
            "-rock",
            *[str(f) for f in files],
        ]
    )
    return cmd


def write_seed_image(
    seed_dir: str,
    name: str,
    payload: str,
    hostname: str | None = None,
    timeout_sec: float | None = None,
) -> Path:
    """Build a NoCloud ``cidata`` ISO holding ``payload`` as user-data."""
    vm_dir = Path(seed_dir) / name
    vm_dir.mkdir(parents=True, exist_ok=True)

    user_data_path = vm_dir / "user-data"
    meta_data_path = vm_dir / "meta-data"
    iso_path = vm_dir / "cidata.iso"

    user_data_path.write_text(payload, encoding="utf-8")
    meta_data_path.write_text(
        f"instance-id: {name}\nlocal-hostname: {hostname or name}\n", encoding="utf-8"
    )

    tool = find_iso_tool()
    if not tool:
        raise SeedImageError(
            command=ISO_TOOLS,
            exit_status=None,
            detail="no ISO authoring tool found in PATH",
        )
    cmd = build_seed_command(tool, iso_path, [user_data_path, meta_data_path])
    try:
        subprocess.run(cmd, check=True, capture_output=True, text=True, timeout=timeout_sec)
    except subprocess.TimeoutExpired as exc:
        raise SeedImageError(
            command=cmd,
            exit_status=None,
            detail=f"cloud-init seed generation timed out after {timeout_sec}s",
        ) from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        stdout = (exc.stdout or "").strip()
        raise SeedImageError(
            command=cmd,
            exit_status=exc.returncode,
            detail=f"cloud-init seed generation failed: {stderr or stdout or exc}",
        ) from exc
    logger.info("cloud-init seed built name=%s path=%s", name, iso_path)
    return iso_path
