"""
Configuration management for the background companion.
"""
import os
import yaml
from pathlib import Path
from typing import Optional, Dict, Any
from dataclasses import dataclass


DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.default.yaml"


@dataclass
class CameraConfig:
    """Camera configuration settings."""
    index: int
    width: int
    height: int
    fps: int


@dataclass
class MediaPipeConfig:
    """MediaPipe Hands configuration settings."""
    max_num_hands: int
    min_detection_confidence: float
    min_tracking_confidence: float


@dataclass
class GesturesConfig:
    """Swipe, clap and palm-open thresholds. Landmark units are normalized [0..1]."""
    history_window_ms: int
    idle_status_delay_ms: int
    swipe_min_displacement: float
    spin_cooldown_ms: int
    switch_cooldown_ms: int
    clap_cooldown_ms: int
    clap_distance_threshold: float
    clap_delta_threshold: float
    clap_max_interval_ms: int
    finger_extension_min_delta: float
    palm_open_min_avg_tip_distance: float


@dataclass
class DialsConfig:
    """Rotary name-entry dials."""
    count: int
    save_delay_ms: int
    min_name_length: int


@dataclass
class AudioConfig:
    """Microphone capture and encoding."""
    device_index: Optional[int]
    capture_sample_rate: int
    frames_per_buffer: int
    sample_duration_s: float
    target_sample_rate: int


@dataclass
class ModelsConfig:
    """Local model runner endpoints."""
    runner_base_url: str
    completions_path: str
    transcription_prompt: str
    audio_format: str
    ensure_models: bool


@dataclass
class PipelineConfig:
    """Auto-loop rescheduling delays."""
    initial_delay_ms: int
    retry_delay_ms: int
    fallback_delay_ms: int
    post_image_delay_ms: int


@dataclass
class HubConfig:
    """Matchmaking hub."""
    url: str


@dataclass
class TunnelConfig:
    """Public tunnel handed to the hub. A non-empty url bypasses the provider."""
    provider: str
    url: str
    image: str
    wait_attempts: int
    poll_interval_ms: int


@dataclass
class ImageConfig:
    """Image generation service."""
    endpoint: str
    model: str
    aspect_ratio: str
    fallback_mime: str


@dataclass
class ServerConfig:
    """Companion HTTP API."""
    host: str
    port: int
    long_poll_timeout_s: float


@dataclass
class SettingsConfig:
    """Persisted settings location."""
    directory: str


@dataclass
class DisplayConfig:
    """Display configuration settings."""
    show_landmarks: bool
    show_log_lines: int
    window_name: str


@dataclass
class Cfg:
    """Main configuration class."""
    camera: CameraConfig
    mediapipe: MediaPipeConfig
    gestures: GesturesConfig
    dials: DialsConfig
    audio: AudioConfig
    models: ModelsConfig
    pipeline: PipelineConfig
    hub: HubConfig
    tunnel: TunnelConfig
    image: ImageConfig
    server: ServerConfig
    settings: SettingsConfig
    display: DisplayConfig


def load_config(path: Optional[str] = None) -> Cfg:
    """
    Load configuration from YAML file.

    Args:
        path: Path to config file. If None, uses the packaged config.default.yaml

    Returns:
        Configuration object with all settings
    """
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f)

    return _apply_env_overrides(_dict_to_config(data))


def _apply_env_overrides(cfg: Cfg) -> Cfg:
    """Deployment-specific values from the environment (.env is loaded by the entry point)."""
    cfg.hub.url = os.getenv("SCENECAST_HUB_URL", cfg.hub.url)
    cfg.tunnel.url = os.getenv("SCENECAST_TUNNEL_URL", cfg.tunnel.url)
    cfg.settings.directory = os.getenv("SCENECAST_SETTINGS_DIR", cfg.settings.directory)
    return cfg


def _dict_to_config(data: Dict[str, Any]) -> Cfg:
    """Convert dictionary to configuration object."""
    camera_data = data['camera']
    camera = CameraConfig(
        index=camera_data['index'],
        width=camera_data['width'],
        height=camera_data['height'],
        fps=camera_data['fps']
    )

    mp_data = data['mediapipe']
    mediapipe = MediaPipeConfig(
        max_num_hands=mp_data['max_num_hands'],
        min_detection_confidence=mp_data['min_detection_confidence'],
        min_tracking_confidence=mp_data['min_tracking_confidence']
    )

    gestures_data = data['gestures']
    gestures = GesturesConfig(
        history_window_ms=gestures_data['history_window_ms'],
        idle_status_delay_ms=gestures_data['idle_status_delay_ms'],
        swipe_min_displacement=gestures_data['swipe_min_displacement'],
        spin_cooldown_ms=gestures_data['spin_cooldown_ms'],
        switch_cooldown_ms=gestures_data['switch_cooldown_ms'],
        clap_cooldown_ms=gestures_data['clap']['cooldown_ms'],
        clap_distance_threshold=gestures_data['clap']['distance_threshold'],
        clap_delta_threshold=gestures_data['clap']['delta_threshold'],
        clap_max_interval_ms=gestures_data['clap']['max_interval_ms'],
        finger_extension_min_delta=gestures_data['palm']['finger_extension_min_delta'],
        palm_open_min_avg_tip_distance=gestures_data['palm']['min_avg_tip_distance']
    )

    dials_data = data['dials']
    dials = DialsConfig(
        count=dials_data['count'],
        save_delay_ms=dials_data['save_delay_ms'],
        min_name_length=dials_data['min_name_length']
    )

    audio_data = data['audio']
    audio = AudioConfig(
        device_index=audio_data.get('device_index'),
        capture_sample_rate=audio_data['capture_sample_rate'],
        frames_per_buffer=audio_data['frames_per_buffer'],
        sample_duration_s=audio_data['sample_duration_s'],
        target_sample_rate=audio_data['target_sample_rate']
    )

    models_data = data['models']
    models = ModelsConfig(
        runner_base_url=models_data['runner_base_url'],
        completions_path=models_data['completions_path'],
        transcription_prompt=models_data['transcription_prompt'],
        audio_format=models_data['audio_format'],
        ensure_models=models_data['ensure_models']
    )

    pipeline_data = data['pipeline']
    pipeline = PipelineConfig(
        initial_delay_ms=pipeline_data['initial_delay_ms'],
        retry_delay_ms=pipeline_data['retry_delay_ms'],
        fallback_delay_ms=pipeline_data['fallback_delay_ms'],
        post_image_delay_ms=pipeline_data['post_image_delay_ms']
    )

    hub_data = data['hub']
    hub = HubConfig(url=hub_data['url'])

    tunnel_data = data['tunnel']
    tunnel = TunnelConfig(
        provider=tunnel_data['provider'],
        url=tunnel_data.get('url') or "",
        image=tunnel_data['image'],
        wait_attempts=tunnel_data['wait_attempts'],
        poll_interval_ms=tunnel_data['poll_interval_ms']
    )

    image_data = data['image']
    image = ImageConfig(
        endpoint=image_data['endpoint'],
        model=image_data['model'],
        aspect_ratio=image_data['aspect_ratio'],
        fallback_mime=image_data['fallback_mime']
    )

    server_data = data['server']
    server = ServerConfig(
        host=server_data['host'],
        port=server_data['port'],
        long_poll_timeout_s=server_data['long_poll_timeout_s']
    )

    settings = SettingsConfig(directory=data['settings']['directory'])

    display_data = data['display']
    display = DisplayConfig(
        show_landmarks=display_data['show_landmarks'],
        show_log_lines=display_data['show_log_lines'],
        window_name=display_data['window_name']
    )

    return Cfg(
        camera=camera,
        mediapipe=mediapipe,
        gestures=gestures,
        dials=dials,
        audio=audio,
        models=models,
        pipeline=pipeline,
        hub=hub,
        tunnel=tunnel,
        image=image,
        server=server,
        settings=settings,
        display=display
    )
