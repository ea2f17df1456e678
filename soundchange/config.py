"""
Configuration module for the sound change engine.

Contains all configurable parameters for compiling and applying rulesets.
"""

from dataclasses import dataclass, field
from typing import List, Tuple, Optional
from enum import Enum
import json
import logging
from pathlib import Path


class LogLevel(Enum):
    """Logging verbosity."""
    DEBUG = "DEBUG"      # Matcher and engine steps
    INFO = "INFO"        # Every change made to a word
    WARNING = "WARNING"  # Compile diagnostics
    ERROR = "ERROR"


@dataclass
class CompilerParams:
    """Rule compiler parameters."""
    # Multi-character graphemes used to segment rule text and words
    graphs: Tuple[str, ...] = ()
    # Separator that breaks up an accidental polygraph in input words
    separator: Optional[str] = None


@dataclass
class EngineParams:
    """Rule application engine parameters."""
    # Pass bound for persistent rules and blocks without their own bound
    max_passes: int = 1000
    # VM step budget per match attempt
    max_match_steps: int = 100_000
    # Stop a persistent rule when a pass revisits an earlier word form
    detect_cycles: bool = True
    # Verify engine invariants and fail loudly on violation
    strict: bool = True


@dataclass
class OptionalParams:
    """Handling of rules flagged `optional` or `chance`."""
    enabled: bool = True
    # Classes switched off even when optional rules are enabled
    disabled_classes: Tuple[str, ...] = ()

    def allows(self, optional_class: str) -> bool:
        return self.enabled and optional_class not in self.disabled_classes


@dataclass
class BatchParams:
    """Lexicon batch parameters."""
    workers: int = 1  # 1 = sequential


@dataclass
class LoggingParams:
    """Logging parameters."""
    level: LogLevel = LogLevel.WARNING
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class SoundChangeConfig:
    """
    Main configuration container for the sound change engine.

    Example:
        config = SoundChangeConfig(
            engine=EngineParams(max_passes=50),
            batch=BatchParams(workers=4),
        )
        config.save("my_config.json")
    """
    compiler: CompilerParams = field(default_factory=CompilerParams)
    engine: EngineParams = field(default_factory=EngineParams)
    optional: OptionalParams = field(default_factory=OptionalParams)
    batch: BatchParams = field(default_factory=BatchParams)
    logging: LoggingParams = field(default_factory=LoggingParams)

    def save(self, path: str | Path) -> None:
        """Save configuration to JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = self._to_dict()
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

    @classmethod
    def load(cls, path: str | Path) -> "SoundChangeConfig":
        """Load configuration from JSON file."""
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return cls._from_dict(data)

    def _to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        def convert(obj):
            if isinstance(obj, Enum):
                return obj.value
            elif hasattr(obj, '__dataclass_fields__'):
                return {k: convert(v) for k, v in obj.__dict__.items()}
            elif isinstance(obj, (list, tuple)):
                return [convert(x) for x in obj]
            return obj

        return convert(self)

    @classmethod
    def _from_dict(cls, data: dict) -> "SoundChangeConfig":
        """Reconstruct from dictionary."""
        data = dict(data)
        if 'compiler' in data:
            compiler = dict(data['compiler'])
            if 'graphs' in compiler:
                compiler['graphs'] = tuple(compiler['graphs'])
            data['compiler'] = CompilerParams(**compiler)
        if 'engine' in data:
            data['engine'] = EngineParams(**data['engine'])
        if 'optional' in data:
            optional = dict(data['optional'])
            if 'disabled_classes' in optional:
                optional['disabled_classes'] = tuple(optional['disabled_classes'])
            data['optional'] = OptionalParams(**optional)
        if 'batch' in data:
            data['batch'] = BatchParams(**data['batch'])
        if 'logging' in data:
            params = dict(data['logging'])
            if 'level' in params:
                params['level'] = LogLevel(params['level'])
            data['logging'] = LoggingParams(**params)

        return cls(**data)

    def validate(self) -> List[str]:
        """Validate configuration, return list of warnings/errors."""
        issues = []

        if self.engine.max_passes < 1:
            issues.append("max_passes must be at least 1")
        if self.engine.max_passes > 1000:
            issues.append("max_passes > 1000 is outside the supported range")
        if self.engine.max_match_steps < 1:
            issues.append("max_match_steps must be positive")

        if self.batch.workers < 1:
            issues.append("workers must be at least 1")

        for graph in self.compiler.graphs:
            if not graph:
                issues.append("graphs must not contain empty strings")
                break
        if self.compiler.separator == "":
            issues.append("separator must be None or a non-empty string")

        return issues


def configure_logging(params: Optional[LoggingParams] = None) -> None:
    """Set up root logging from LoggingParams."""
    params = params or LoggingParams()
    logging.basicConfig(level=getattr(logging, params.level.value), format=params.format)


# Preset configurations
def default_config() -> SoundChangeConfig:
    """Default configuration: sequential, optional rules on."""
    return SoundChangeConfig()


def reproducible_config() -> SoundChangeConfig:
    """Optional rules switched off, so output depends only on the ruleset."""
    return SoundChangeConfig(
        optional=OptionalParams(enabled=False),
    )


def batch_config(workers: int = 4) -> SoundChangeConfig:
    """Parallel lexicon processing."""
    return SoundChangeConfig(
        batch=BatchParams(workers=workers),
    )
