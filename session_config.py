"""Configuration for the duplex voice session.

Audio constants live at module level; everything negotiable per session is
carried by the dataclasses below. ``load_config()`` merges an optional JSON
file with environment overrides.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

logger = logging.getLogger(__name__)

# Audio settings
INPUT_SAMPLE_RATE = 16000
OUTPUT_SAMPLE_RATE = 24000
CHANNELS = 1
FRAME_SIZE = 4096  # samples per capture callback (~256ms at 16kHz)
BYTES_PER_SAMPLE = 2  # 16-bit PCM
SPEECH_COOLDOWN = 0.7  # seconds after playback ends before the mic reopens
FFT_SIZE = 256

# Remote agent
DEFAULT_URL = "wss://localhost:8765/v1/live"
DEFAULT_MODEL = "native-audio-dialog"
DEFAULT_VOICE = "Aoede"

DEFAULT_PERSONA_DIR = Path.home() / ".config" / "voice-session" / "persona"


@dataclass
class AudioConfig:
    input_rate: int = INPUT_SAMPLE_RATE
    output_rate: int = OUTPUT_SAMPLE_RATE
    frame_size: int = FRAME_SIZE
    cooldown: float = SPEECH_COOLDOWN
    fft_size: int = FFT_SIZE


@dataclass
class IntegrationsConfig:
    """Capability flags. Each flag contributes tools only when enabled."""
    workspace: bool = False
    youtube: bool = True
    media: bool = True
    open_tabs: bool = False
    notifications: bool = False
    personalized_search: bool = False
    expressions: bool = True

    def summary(self) -> str:
        lines = []
        for f in fields(self):
            state = "ENABLED" if getattr(self, f.name) else "DISABLED"
            lines.append(f"- {f.name}: {state}")
        return "\n".join(lines)


@dataclass
class SessionConfig:
    url: str = DEFAULT_URL
    api_key: str | None = None
    model: str = DEFAULT_MODEL
    voice: str = DEFAULT_VOICE
    persona_dir: Path = DEFAULT_PERSONA_DIR
    log_path: Path | None = None
    log_capacity: int = 500
    audio: AudioConfig = field(default_factory=AudioConfig)
    integrations: IntegrationsConfig = field(default_factory=IntegrationsConfig)


def get_api_key():
    """Get the remote agent API key from the environment or a key file."""
    key = os.environ.get("VOICE_SESSION_API_KEY")
    if key:
        return key
    for path in [
        Path.home() / ".config" / "voice-session" / "api_key",
        Path.home() / ".voice-session" / "api_key",
    ]:
        if path.exists():
            return path.read_text().strip()
    return None


def load_config(path=None) -> SessionConfig:
    """Build a SessionConfig from an optional JSON file plus env overrides.

    Unknown keys in the file are ignored with a warning.
    """
    data = {}
    if path is not None:
        data = json.loads(Path(path).read_text())

    config = SessionConfig()
    audio = data.pop("audio", {})
    integrations = data.pop("integrations", {})
    _apply(config, data)
    _apply(config.audio, audio)
    _apply(config.integrations, integrations)

    config.url = os.environ.get("VOICE_SESSION_URL", config.url)
    config.model = os.environ.get("VOICE_SESSION_MODEL", config.model)
    config.voice = os.environ.get("VOICE_SESSION_VOICE", config.voice)
    if config.api_key is None:
        config.api_key = get_api_key()
    if isinstance(config.persona_dir, str):
        config.persona_dir = Path(config.persona_dir).expanduser()
    if isinstance(config.log_path, str):
        config.log_path = Path(config.log_path).expanduser()
    return config


def _apply(target, values: dict):
    names = {f.name for f in fields(target)}
    for key, value in values.items():
        if key not in names:
            logger.warning("Ignoring unknown config key: %s", key)
            continue
        setattr(target, key, value)


# ── System instruction ──────────────────────────────────────────

def load_persona(persona_dir: Path) -> str:
    """Load persona text from .md files and the memories/ subdirectory."""
    parts = []
    if not persona_dir.exists():
        return ""

    for md_file in sorted(persona_dir.glob("*.md")):
        content = md_file.read_text().strip()
        if content:
            parts.append(content)

    memories_dir = persona_dir / "memories"
    if memories_dir.exists():
        memory_parts = []
        for md_file in sorted(memories_dir.glob("*.md")):
            content = md_file.read_text().strip()
            if content:
                memory_parts.append(content)
        if memory_parts:
            parts.append("# Memories\n\n" + "\n\n".join(memory_parts))

    return "\n\n".join(parts)


def build_system_instruction(persona: str, integrations: IntegrationsConfig,
                             memories=(), file_names=(), location=None) -> str:
    """Assemble the system instruction sent once at connect time."""
    parts = [persona.strip() or "You are a friendly, concise voice assistant."]

    if memories:
        lines = "\n".join(f"- {m}" for m in memories)
        parts.append(f"# Long-term memory\n\n{lines}")

    if location:
        parts.append(f"# User location\n\n{location}")

    if file_names:
        parts.append("# Workspace files\n\n" + ", ".join(file_names))

    parts.append("# Enabled integrations\n\n" + integrations.summary())
    return "\n\n".join(parts)
