from agile_bloom.backend.engine.config import EngineSettings, load_settings
from agile_bloom.backend.engine.engine import DiscussionEngine
from agile_bloom.backend.engine.errors import EngineError
from agile_bloom.backend.engine.providers import ResponseRouter
from agile_bloom.backend.engine.store import EntityStore

__all__ = [
	"DiscussionEngine",
	"EngineError",
	"EngineSettings",
	"EntityStore",
	"ResponseRouter",
	"load_settings",
]
