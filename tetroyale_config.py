"""Configuration for the Tetroyale server and game engine."""

from __future__ import annotations

import configparser
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from tetroyale_engine import SpeedPolicy


LOG_FORMAT = "[TETROYALE] %(asctime)s %(levelname)s %(name)s - %(message)s"


@dataclass
class AppConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    database: str = "tetroyale.db"
    log_level: str = "INFO"
    chat_max_length: int = 200
    attack_threshold: int = 200
    duel_win_points: int = 100
    min_battle_players: int = 3
    max_battle_players: int = 21
    drop_interval_ms: int = 1000
    speed_step_ms: int = 0
    lines_per_speed_step: int = 10
    min_drop_interval_ms: int = 100

    @classmethod
    def from_file(cls, path: Path) -> "AppConfig":
        parser = configparser.ConfigParser()
        parser.read(path)
        server = parser["server"] if parser.has_section("server") else {}
        game = parser["game"] if parser.has_section("game") else {}

        return cls(
            host=str(server.get("host", cls.host)),
            port=int(server.get("port", cls.port)),
            database=str(server.get("database", cls.database)),
            log_level=str(server.get("log_level", cls.log_level)).upper(),
            chat_max_length=int(server.get("chat_max_length", cls.chat_max_length)),
            attack_threshold=int(game.get("attack_threshold", cls.attack_threshold)),
            duel_win_points=int(game.get("duel_win_points", cls.duel_win_points)),
            min_battle_players=int(
                game.get("min_battle_players", cls.min_battle_players)
            ),
            max_battle_players=int(
                game.get("max_battle_players", cls.max_battle_players)
            ),
            drop_interval_ms=int(game.get("drop_interval_ms", cls.drop_interval_ms)),
            speed_step_ms=int(game.get("speed_step_ms", cls.speed_step_ms)),
            lines_per_speed_step=int(
                game.get("lines_per_speed_step", cls.lines_per_speed_step)
            ),
            min_drop_interval_ms=int(
                game.get("min_drop_interval_ms", cls.min_drop_interval_ms)
            ),
        )

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "AppConfig":
        """Read the INI file, then apply ``TETROYALE_*`` environment overrides."""
        if path is None:
            path = Path(
                os.environ.get(
                    "TETROYALE_CONFIG",
                    Path(__file__).resolve().parent / "tetroyale.ini",
                )
            )
        config = cls.from_file(path)
        config.host = os.environ.get("TETROYALE_HOST", config.host)
        config.port = int(os.environ.get("TETROYALE_PORT", config.port))
        config.database = os.environ.get("TETROYALE_DB", config.database)
        return config

    def speed_policy(self) -> SpeedPolicy:
        return SpeedPolicy(
            initial_ms=self.drop_interval_ms,
            step_ms=self.speed_step_ms,
            lines_per_step=self.lines_per_speed_step,
            min_ms=self.min_drop_interval_ms,
        )

    def game_settings(self) -> Dict[str, object]:
        """Rules each client needs to run its own board."""
        speed = self.speed_policy()
        return {
            "attack_threshold": self.attack_threshold,
            "drop_interval_ms": speed.initial_ms,
            "speed_step_ms": speed.step_ms,
            "lines_per_speed_step": speed.lines_per_step,
            "min_drop_interval_ms": speed.min_ms,
        }


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
