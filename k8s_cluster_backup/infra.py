"""
Infrastructure-as-code collaborators: terraformer export at backup time and
terraform apply at restore time. Both shell out to the CLI tools.
"""
import json
import logging
import os
import shutil
import subprocess

from .config import INFRA_EXPORT_DIR
from .errors import InfrastructureError, ExportWarning

logger = logging.getLogger(__name__)

TERRAFORMER_RESOURCES = "ec2_instance,vpc,subnet,sg"


def run_command(cmd, cwd=None, output_file=None, check=True):
    """Run a command (given as a list), optionally sending its output to a file."""
    logger.debug(f"Running command: {' '.join(cmd)}")
    if output_file:
        with open(output_file, "w") as f:
            return subprocess.run(cmd, cwd=cwd, stdout=f, stderr=subprocess.STDOUT, text=True, check=check)
    return subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, check=check)


class TerraformerExport:
    """Exports the node instances and their network into <backup_dir>/aws."""

    def __init__(self, context, runner=run_command, which=shutil.which):
        self.context = context
        self.runner = runner
        self.which = which

    def export(self, nodes):
        if self.which("terraformer") is None:
            raise ExportWarning("terraformer not found on PATH. Skipping infrastructure export.")
        instance_ids = ":".join(node.infrastructure_id for node in nodes)
        log_path = self.context.path("terraformer.log")
        logger.info(f"Running Terraformer to export EC2 infrastructure for {instance_ids}...")
        cmd = [
            "terraformer", "import", "aws",
            f"--resources={TERRAFORMER_RESOURCES}",
            f"--regions={self.context.config.region}",
            f"--filter=Type=ec2_instance;Name=id;Value={instance_ids}",
            f"--path-output={self.context.backup_dir}",
            "--path-pattern={output}/{provider}/",
        ]
        try:
            self.runner(cmd, cwd=self.context.backup_dir, output_file=log_path)
        except (subprocess.CalledProcessError, OSError) as e:
            raise ExportWarning(f"Terraformer export failed: {e}. Check {log_path}") from e
        export_dir = self.context.path(INFRA_EXPORT_DIR)
        logger.info(f"Infrastructure exported to {export_dir}")
        return export_dir


class TerraformRunner:
    def __init__(self, working_dir, runner=run_command):
        self.working_dir = working_dir
        self.runner = runner

    def apply(self):
        """init + apply in working_dir, then return {output_name: value}."""
        if not os.path.isdir(self.working_dir):
            raise InfrastructureError(f"Terraform directory not found: {self.working_dir}")
        try:
            logger.info(f"Initializing Terraform in {self.working_dir}...")
            self.runner(["terraform", "init", "-reconfigure", "-input=false"], cwd=self.working_dir)
            logger.info("Applying Terraform state...")
            self.runner(["terraform", "apply", "-auto-approve", "-input=false"], cwd=self.working_dir)
            res = self.runner(["terraform", "output", "-json"], cwd=self.working_dir)
        except subprocess.CalledProcessError as e:
            raise InfrastructureError(f"Terraform failed: {e}") from e
        except OSError as e:
            raise InfrastructureError(f"Cannot run terraform: {e}") from e
        try:
            outputs = json.loads(res.stdout or "{}")
        except ValueError as e:
            raise InfrastructureError(f"Unparseable terraform output: {e}") from e
        return {name: item.get("value") if isinstance(item, dict) else item for name, item in outputs.items()}


def instance_id_from_outputs(outputs, output_name=None):
    """
    Pick the restored instance id out of terraform outputs.

    With output_name the value must be present. Without it, exactly one output
    must look like an instance id.
    """
    if output_name:
        value = outputs.get(output_name)
        if not value:
            raise InfrastructureError(f"Terraform output '{output_name}' is missing after apply")
        return value
    candidates = sorted(
        v for k, v in outputs.items()
        if isinstance(v, str) and v.startswith("i-") and k.endswith("_id")
    )
    if len(candidates) != 1:
        raise InfrastructureError(
            "Restored instance not found in terraform outputs"
            if not candidates else
            f"Several instance ids in terraform outputs ({', '.join(candidates)}); set instance_output"
        )
    return candidates[0]
