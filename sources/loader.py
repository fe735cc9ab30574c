"""Source configuration loader for docshelf.

Loads and validates repository source definitions from YAML files. Each
file describes one GitHub repository and the documentation versions to
keep in sync:

    name: spring-boot
    url: https://github.com/spring-projects/spring-boot   # or owner/repo keys
    docs_path: docs
    versions:
      - version_id: 3b5c...
        ref: v3.2.0
"""

import re
import yaml
from pathlib import Path
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field
import logging

logger = logging.getLogger(__name__)

GITHUB_URL = re.compile(r'https://github\.com/([^/]+)/([^/#?]+?)(?:\.git)?/?$')


def parse_github_url(url: str):
    """Return (owner, repo) for a github.com repository URL."""
    match = GITHUB_URL.match((url or '').strip())
    if not match:
        raise ValueError(f"Not a GitHub repository URL: {url}")
    return match.group(1), match.group(2)


@dataclass
class VersionConfig:
    """One documentation version of a source."""
    version_id: str
    ref: str
    docs_path: Optional[str] = None

    def __post_init__(self):
        if not self.version_id:
            raise ValueError("Version id cannot be empty")
        if not self.ref:
            raise ValueError(f"Version {self.version_id} needs a ref")


@dataclass
class SourceConfig:
    """Configuration for a repository documentation source."""
    name: str
    owner: str
    repo: str
    docs_path: str = "docs"
    versions: List[VersionConfig] = field(default_factory=list)
    enabled: bool = True

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not self.name:
            raise ValueError("Source name cannot be empty")
        if not self.owner or not self.repo:
            raise ValueError(f"Source {self.name} needs an owner and a repo")
        if not self.versions:
            raise ValueError(f"Source {self.name} must list at least one version")

    def docs_path_for(self, version: VersionConfig) -> str:
        return version.docs_path or self.docs_path

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SourceConfig':
        """Create SourceConfig from dictionary."""
        owner, repo = data.get('owner'), data.get('repo')
        if data.get('url') and not (owner and repo):
            owner, repo = parse_github_url(data['url'])
        versions = [
            VersionConfig(
                version_id=str(v['version_id']),
                ref=str(v.get('ref') or v['version_id']),
                docs_path=v.get('docs_path'),
            )
            for v in data.get('versions') or []
        ]
        return cls(
            name=data['name'],
            owner=owner,
            repo=repo,
            docs_path=data.get('docs_path', 'docs'),
            versions=versions,
            enabled=data.get('enabled', True)
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'name': self.name,
            'owner': self.owner,
            'repo': self.repo,
            'docs_path': self.docs_path,
            'enabled': self.enabled,
            'versions': [
                {k: v for k, v in vars(version).items() if v is not None}
                for version in self.versions
            ],
        }


class SourceLoader:
    """Loads source configurations from YAML files."""

    def __init__(self, sources_dir: Optional[Path] = None):
        """Initialize source loader.

        Args:
            sources_dir: Directory containing source YAML files.
                        Defaults to 'sources' directory relative to this file.
        """
        if sources_dir is None:
            sources_dir = Path(__file__).parent

        self.sources_dir = Path(sources_dir)
        self._cache: Dict[str, SourceConfig] = {}
        self._last_modified: Dict[str, float] = {}

    def load_source_config(self, source_name: str) -> Optional[SourceConfig]:
        """Load configuration for a specific source.

        Args:
            source_name: Name of the source (without .yaml extension)

        Returns:
            SourceConfig if found and valid, None otherwise
        """
        yaml_file = self.sources_dir / f"{source_name}.yaml"

        if not yaml_file.exists():
            logger.warning(f"Source configuration not found: {yaml_file}")
            return None

        current_mtime = yaml_file.stat().st_mtime
        if (source_name in self._cache and
                self._last_modified.get(source_name, 0) >= current_mtime):
            return self._cache[source_name]

        try:
            with open(yaml_file, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)

            if not data:
                logger.error(f"Empty or invalid YAML file: {yaml_file}")
                return None

            # Ensure name matches filename
            if data.get('name') != source_name:
                if 'name' in data:
                    logger.warning(f"Source name mismatch in {yaml_file}: {data['name']} != {source_name}")
                data['name'] = source_name

            config = SourceConfig.from_dict(data)

            self._cache[source_name] = config
            self._last_modified[source_name] = current_mtime

            logger.info(f"Loaded source configuration: {source_name}")
            return config

        except yaml.YAMLError as e:
            logger.error(f"Failed to parse YAML file {yaml_file}: {e}")
            return None
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Invalid source configuration in {yaml_file}: {e}")
            return None

    def load_all_sources(self) -> Dict[str, SourceConfig]:
        """Load all source configurations from the sources directory."""
        sources = {}

        if not self.sources_dir.exists():
            logger.warning(f"Sources directory not found: {self.sources_dir}")
            return sources

        for yaml_file in sorted(self.sources_dir.glob("*.yaml")):
            config = self.load_source_config(yaml_file.stem)
            if config:
                sources[yaml_file.stem] = config

        logger.info(f"Loaded {len(sources)} source configurations")
        return sources

    def get_enabled_sources(self) -> Dict[str, SourceConfig]:
        """Get all enabled source configurations."""
        return {name: config for name, config in self.load_all_sources().items() if config.enabled}

    def reload_cache(self):
        """Clear cache to force reload of all configurations."""
        self._cache.clear()
        self._last_modified.clear()
        logger.info("Source configuration cache cleared")
