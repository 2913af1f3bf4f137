from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from agile_bloom.backend import constants
from agile_bloom.backend.engine.config import persona_db_path
from agile_bloom.backend.engine.types import Persona


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _connect(path: str) -> sqlite3.Connection:
	conn = sqlite3.connect(path, timeout=constants.SQLITE_BUSY_TIMEOUT_MS / 1000)
	conn.execute("PRAGMA journal_mode=WAL")
	conn.execute("PRAGMA synchronous=NORMAL")
	conn.execute(f"PRAGMA busy_timeout={constants.SQLITE_BUSY_TIMEOUT_MS}")
	return conn


class PersonaRepository:
	"""Durable store for custom personas.

	Built-in personas are never written here; they always come from the
	engine defaults.
	"""

	def __init__(self, db_path: Optional[str] = None):
		self.db_path = db_path or persona_db_path()
		self._init_db()

	def _init_db(self) -> None:
		if self.db_path != ":memory:":
			Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
		conn = _connect(self.db_path)
		try:
			conn.execute(
				"""
				CREATE TABLE IF NOT EXISTS custom_personas (
					name TEXT PRIMARY KEY,
					glyph TEXT NOT NULL,
					description TEXT NOT NULL,
					bg_color TEXT NOT NULL,
					text_color TEXT NOT NULL,
					updated_at TEXT NOT NULL
				)
				"""
			)
			conn.commit()
		finally:
			conn.close()

	def list(self) -> List[Persona]:
		conn = _connect(self.db_path)
		try:
			conn.row_factory = sqlite3.Row
			rows = conn.execute(
				"""
				SELECT name, glyph, description, bg_color, text_color
				FROM custom_personas
				ORDER BY name
				"""
			).fetchall()
		finally:
			conn.close()
		return [
			Persona(
				name=row["name"],
				glyph=row["glyph"],
				description=row["description"],
				bg_color=row["bg_color"],
				text_color=row["text_color"],
				is_custom=True,
			)
			for row in rows
		]

	def add(self, persona: Persona) -> None:
		conn = _connect(self.db_path)
		try:
			conn.execute(
				"""
				INSERT INTO custom_personas (name, glyph, description, bg_color, text_color, updated_at)
				VALUES (?, ?, ?, ?, ?, ?)
				ON CONFLICT(name) DO UPDATE SET
					glyph = excluded.glyph,
					description = excluded.description,
					bg_color = excluded.bg_color,
					text_color = excluded.text_color,
					updated_at = excluded.updated_at
				""",
				(persona.name, persona.glyph, persona.description, persona.bg_color, persona.text_color, _now_iso()),
			)
			conn.commit()
		finally:
			conn.close()

	def remove(self, name: str) -> bool:
		conn = _connect(self.db_path)
		try:
			cursor = conn.execute("DELETE FROM custom_personas WHERE name = ?", (name,))
			conn.commit()
			return cursor.rowcount > 0
		finally:
			conn.close()
