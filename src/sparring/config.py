"""Centralized application configuration.

Settings are read from environment variables (or a .env.sparring file).
Nothing is required: the defaults run the bundled opening book and the
built-in strength table against a ``stockfish`` binary on PATH.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict

from sparring.strength import DEFAULT_PICKER_CONFIG, PickerConfig, load_picker_config


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env.sparring", env_file_encoding="utf-8",
    )

    # Stockfish (hash / threads fall back to the strength table's values)
    stockfish_path: str = "stockfish"
    stockfish_hash_mb: int | None = None
    stockfish_threads: int | None = None

    # Data overrides
    picker_config_path: str | None = None
    opening_book_path: str | None = None

    log_level: str = "WARNING"

    def picker_config(self) -> PickerConfig:
        """Strength table, replaced from picker_config_path when set."""
        if self.picker_config_path:
            return load_picker_config(self.picker_config_path)
        return DEFAULT_PICKER_CONFIG

    def effective_hash_mb(self, config: PickerConfig) -> int:
        return self.stockfish_hash_mb or config.hash_mb

    def effective_threads(self, config: PickerConfig) -> int:
        return self.stockfish_threads or config.threads
