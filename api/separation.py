"""
Stem separation through whichever engine is installed: Demucs first, Spleeter second.

Both engines run as `python -m <engine>` under the configured interpreter and each
writes its own directory layout; `StemSeparator.separate` always hands back one
file per StemKind.
"""
import logging
import os

from config import Settings
from errors import SeparationUnavailableError, ToolInvocationError, ToolTimeoutError
from models import StemKind
from runner import ProcessRunner

logger = logging.getLogger(__name__)


class SeparationEngine:
    name = ""
    extension = ""

    def probe_args(self) -> list[str]:
        raise NotImplementedError

    def build_args(self, source_path: str, output_dir: str) -> list[str]:
        raise NotImplementedError

    def track_dir(self, source_path: str, output_dir: str) -> str:
        raise NotImplementedError

    def stem_paths(self, source_path: str, output_dir: str) -> dict[StemKind, str]:
        base = self.track_dir(source_path, output_dir)
        return {kind: os.path.join(base, f"{kind.source_name}.{self.extension}") for kind in StemKind}


class Demucs(SeparationEngine):
    """Writes <out>/<model>/<track>/{vocals,drums,bass,other}.mp3"""

    name = "demucs"
    extension = "mp3"

    def __init__(self, model: str):
        self.model = model

    def probe_args(self) -> list[str]:
        return ["-m", "demucs", "--help"]

    def build_args(self, source_path: str, output_dir: str) -> list[str]:
        return ["-m", "demucs", "--mp3", "--out", output_dir, "--name", self.model, source_path]

    def track_dir(self, source_path: str, output_dir: str) -> str:
        track = os.path.splitext(os.path.basename(source_path))[0]
        return os.path.join(output_dir, self.model, track)


class Spleeter(SeparationEngine):
    """Writes <out>/<track>/{vocals,drums,bass,other}.wav"""

    name = "spleeter"
    extension = "wav"

    def probe_args(self) -> list[str]:
        return ["-m", "spleeter", "separate", "-h"]

    def build_args(self, source_path: str, output_dir: str) -> list[str]:
        return ["-m", "spleeter", "separate", "-p", "spleeter:4stems", "-o", output_dir, source_path]

    def track_dir(self, source_path: str, output_dir: str) -> str:
        track = os.path.splitext(os.path.basename(source_path))[0]
        return os.path.join(output_dir, track)


class StemSeparator:
    def __init__(self, settings: Settings, runner: ProcessRunner):
        self.settings = settings
        self.runner = runner
        self.engines: list[SeparationEngine] = [Demucs(settings.demucs_model), Spleeter()]

    def select_engine(self) -> SeparationEngine | None:
        """Probe the environment for a usable engine. Not cached: installs change."""
        python = self.settings.separation_python
        if not self.runner.probe(python, ["--version"]):
            logger.warning(f"Separation interpreter not available: {python}")
            return None
        for engine in self.engines:
            if self.runner.run(python, engine.probe_args(), timeout=120).succeeded:
                logger.info(f"Selected separation engine: {engine.name}")
                return engine
        return None

    def separate(self, source_path: str, output_dir: str) -> dict[StemKind, str]:
        """
        Split `source_path` into four stems under `output_dir`.
        Returns the expected path of every stem kind; callers verify the files exist.
        """
        engine = self.select_engine()
        if engine is None:
            raise SeparationUnavailableError(
                "Stem separation unavailable. Install Demucs (python3 -m pip install demucs) "
                "or Spleeter (python3 -m pip install spleeter)."
            )

        logger.info(f"Separating {source_path} with {engine.name}")
        result = self.runner.run(
            self.settings.separation_python,
            engine.build_args(source_path, output_dir),
            timeout=self.settings.separation_timeout_s,
        )
        if not result.succeeded:
            stderr = result.stderr.strip()
            message = f"Stem separation with {engine.name} failed"
            if stderr:
                message = f"{message}: {stderr[-500:]}"
            if result.timed_out:
                raise ToolTimeoutError(message, stderr=stderr)
            raise ToolInvocationError(message, stderr=stderr, exit_code=result.exit_code)

        return engine.stem_paths(source_path, output_dir)
