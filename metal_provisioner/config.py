"""Provisioner configuration file loading.

This module reads the YAML run file using ruamel.yaml and validates it into
frozen pydantic models.
"""

from pathlib import Path

from pydantic import ValidationError
from ruamel.yaml import YAML

from metal_provisioner.exceptions import ConfigurationError
from metal_provisioner.logging_config import get_logger
from metal_provisioner.models.config import ClusterFeatures, ProvisionerConfig, RunConfig, RunMode

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = "provisioner.yml"


class ConfigLoader:
    """Reader for the provisioner configuration file."""

    def __init__(self, config_path: str | Path):
        """Initialize the loader.

        Args:
            config_path: Path to the YAML configuration file
        """
        self.config_path = Path(config_path)
        self.yaml = YAML(typ="safe")

    def read(self) -> dict:
        """Read the configuration file and return parsed data.

        Returns:
            Dictionary containing configuration data

        Raises:
            ConfigurationError: If file cannot be read or parsed
        """
        logger.debug(f"Reading configuration file: {self.config_path}")

        if not self.config_path.exists():
            logger.error(f"Configuration file not found: {self.config_path}")
            raise ConfigurationError(
                f"Configuration file not found: {self.config_path}",
                f"Expected location: {self.config_path.absolute()}\n"
                "Create the file or specify a different path with --config",
            )

        try:
            with open(self.config_path) as f:
                data = self.yaml.load(f)
        except Exception as e:
            logger.error(f"Failed to read configuration file: {e}", exc_info=True)
            raise ConfigurationError(
                f"Failed to read configuration file: {e}",
                f"The file may have invalid YAML syntax. Check {self.config_path.absolute()}",
            )

        if data is None:
            raise ConfigurationError(
                "Configuration file is empty",
                "See provisioner.yml.example for a template.",
            )
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration file must contain a mapping at the top level")

        logger.debug(f"Successfully read configuration with {len(data)} top-level keys")
        return data

    def load(self) -> ProvisionerConfig:
        """Read and validate the configuration file.

        Raises:
            ConfigurationError: If the content does not validate
        """
        data = self.read()
        try:
            return ProvisionerConfig.model_validate(data)
        except ValidationError as e:
            problems = []
            for error in e.errors():
                field = ".".join(str(x) for x in error["loc"])
                problems.append(f"  - {field}: {error['msg']}")
            raise ConfigurationError(
                f"Invalid configuration in {self.config_path}", "\n".join(problems)
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration in {self.config_path}", str(e))


def load_run_config(
    config_path: str | Path = DEFAULT_CONFIG_PATH,
    cni: bool = True,
    coredns: bool = True,
    mode: RunMode = RunMode.LOCAL,
) -> RunConfig:
    """Build the immutable run configuration from the file and CLI flags."""
    settings = ConfigLoader(config_path).load()
    return RunConfig(
        settings=settings,
        features=ClusterFeatures(cni=cni, coredns=coredns),
        mode=mode,
    )
