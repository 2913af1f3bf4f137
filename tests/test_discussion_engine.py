import asyncio
import json
from unittest import IsolatedAsyncioTestCase

from agile_bloom.backend.engine import DiscussionEngine, EngineSettings, ResponseRouter
from agile_bloom.backend.engine.commands import NO_TOPIC_MESSAGE
from agile_bloom.backend.engine.errors import (
	ConfigurationError,
	EngineBusyError,
	InvalidTransitionError,
	QuotaExceededError,
)
from agile_bloom.backend.engine.providers import ProviderAdapter
from agile_bloom.backend.engine.types import ProviderReply, ProviderRequest


async def _no_sleep(_seconds: float) -> None:
	return None


class _ScriptedAdapter(ProviderAdapter):
	provider = "Local"

	def __init__(self, replies=(), gate=None):
		super().__init__()
		self.replies = list(replies)
		self.gate = gate
		self.requests = []

	async def generate(self, request: ProviderRequest) -> ProviderReply:
		self.requests.append(request)
		if self.gate is not None:
			await self.gate.wait()
		reply = self.replies.pop(0)
		if isinstance(reply, Exception):
			raise reply
		return ProviderReply(text=json.dumps(reply))


def _reply(expert, message="Noted."):
	return {"expert": expert, "message": message, "thoughts": [], "tasks": [], "stories": []}


def _scripted_engine(replies=(), *, gate=None, **settings):
	engine_settings = EngineSettings(**settings)
	adapter = _ScriptedAdapter(replies, gate=gate)
	router = ResponseRouter(settings=engine_settings, adapters={"Local": adapter}, sleep=_no_sleep)
	engine = DiscussionEngine(router=router, settings=engine_settings, sleep=_no_sleep)
	engine.store.set_topic("Checkout redesign")
	engine.set_roster(["Engineer"])
	return engine, adapter


def _texts(messages):
	return [(message.persona.name, message.text) for message in messages]


class DiscussionEngineTests(IsolatedAsyncioTestCase):
	async def test_start_runs_the_first_round_with_the_local_provider(self) -> None:
		engine = DiscussionEngine(sleep=_no_sleep)

		messages = await engine.start("Checkout redesign", roster=["Engineer", "Artist"], context="We sell furniture.")

		self.assertEqual(
			messages[0].text,
			'Discussion started on topic: "Checkout redesign" with experts: Engineer, Artist, Scrum Leader.',
		)
		self.assertIn("We sell furniture.", messages[1].text)
		self.assertEqual((messages[2].persona.name, messages[2].text), ("User", "/continue"))
		self.assertEqual([message.persona.name for message in messages[3:]], ["Scrum Leader", "Engineer", "Artist"])
		self.assertEqual(len(engine.store.questions()), 3)
		self.assertTrue(engine.store.narrative_summary.startswith("The team has exchanged"))
		self.assertFalse(engine.busy)
		self.assertFalse(engine.store.is_loading)

	async def test_start_requires_a_topic(self) -> None:
		with self.assertRaises(InvalidTransitionError):
			await DiscussionEngine(sleep=_no_sleep).start("   ")

	async def test_free_text_without_topic_reports_an_error(self) -> None:
		engine = DiscussionEngine(sleep=_no_sleep)
		messages = await engine.submit("hello")
		self.assertEqual(_texts(messages), [("User", "hello"), ("System", NO_TOPIC_MESSAGE)])
		self.assertTrue(messages[1].is_error)
		self.assertEqual(await engine.submit("   "), [])

	async def test_rate_limit_blocks_and_recovers(self) -> None:
		now = [0.0]
		engine = DiscussionEngine(
			settings=EngineSettings(rate_limit_max=2, rate_limit_window_s=10.0),
			sleep=_no_sleep,
			clock=lambda: now[0],
		)
		await engine.submit("/help")
		await engine.submit("/help")

		blocked = await engine.submit("/help")
		self.assertEqual(_texts(blocked), [("System", "Rate limit exceeded. Please wait 10 seconds.")])
		self.assertTrue(engine.store.is_rate_limited)

		now[0] = 10.0
		allowed = await engine.submit("/help")
		self.assertEqual(_texts(allowed), [("User", "/help")])
		self.assertFalse(engine.store.is_rate_limited)

	async def test_quota_failure_latches_until_cleared(self) -> None:
		engine, adapter = _scripted_engine(
			[
				RuntimeError("429 insufficient_quota"),
				_reply("Scrum Leader"),
				_reply("Engineer"),
				_reply("Scrum Leader", "Summary."),
			]
		)

		messages = await engine.submit("hello")
		self.assertEqual(messages[0].text, "hello")
		self.assertTrue(messages[1].is_error)
		self.assertIn("quota exceeded", messages[1].text)
		self.assertTrue(engine.store.is_quota_exceeded)
		self.assertEqual(len(adapter.requests), 1)

		with self.assertRaises(QuotaExceededError):
			await engine.submit("again")

		engine.clear_quota_block()
		messages = await engine.submit("again")
		self.assertEqual([message.persona.name for message in messages], ["User", "Scrum Leader", "Engineer"])
		self.assertEqual(engine.store.narrative_summary, "Summary.")

	async def test_quota_failure_in_summary_refresh_latches(self) -> None:
		engine, adapter = _scripted_engine(
			[_reply("Scrum Leader"), _reply("Engineer"), RuntimeError("RESOURCE_EXHAUSTED")]
		)

		messages = await engine.submit("hello")

		self.assertTrue(messages[-1].is_error)
		self.assertTrue(engine.store.is_quota_exceeded)
		self.assertNotEqual(engine.store.narrative_summary, "Error updating summary.")
		with self.assertRaises(QuotaExceededError):
			await engine.submit("again")
		with self.assertRaises(QuotaExceededError):
			await engine.refresh_narrative_summary()
		self.assertEqual(len(adapter.requests), 3)
		self.assertFalse(engine.busy)

	async def test_summary_refresh_runs_under_the_guard(self) -> None:
		engine, adapter = _scripted_engine([_reply("Scrum Leader", "Short recap.")])
		engine.store.add_message("User", "hello")
		engine.store.add_message("Engineer", "hi")

		self.assertEqual(await engine.refresh_narrative_summary(), "Short recap.")
		self.assertEqual(len(adapter.requests), 1)
		self.assertFalse(engine.busy)

	async def test_bulk_update_reports_progress_made_before_a_quota_failure(self) -> None:
		engine, _ = _scripted_engine([_reply("Scrum Leader"), RuntimeError("insufficient_quota")])
		engineer = engine.store.personas()["Engineer"]
		questions = [
			engine.store.add_question(f"Open point number {index}?", origin_persona=engineer, origin_message_id=f"m{index}")
			for index in range(3)
		]
		ids = [question.id for question in questions]

		result = await engine.bulk_update_questions(ids, "Addressed")

		self.assertEqual(result.updated, [ids[0]])
		self.assertIn("quota", result.failures[ids[1]])
		self.assertEqual(result.failures[ids[2]], "not processed")
		self.assertEqual(engine.store.get_question(ids[0]).status, "Addressed")
		self.assertTrue(engine.store.is_quota_exceeded)

	async def test_second_operation_while_busy_is_rejected(self) -> None:
		gate = asyncio.Event()
		engine, _ = _scripted_engine(
			[_reply("Scrum Leader"), _reply("Engineer"), _reply("Scrum Leader", "Summary.")],
			gate=gate,
		)

		pending = asyncio.create_task(engine.submit("hello"))
		while not engine.busy:
			await asyncio.sleep(0)

		with self.assertRaises(EngineBusyError):
			await engine.submit("interrupt")
		with self.assertRaises(EngineBusyError):
			await engine.generate_tasks()
		with self.assertRaises(EngineBusyError):
			await engine.refresh_narrative_summary()

		gate.set()
		messages = await pending
		self.assertEqual([message.persona.name for message in messages], ["User", "Scrum Leader", "Engineer"])
		self.assertFalse(engine.busy)

	async def test_auto_mode_continues_once_after_an_ai_turn(self) -> None:
		engine = DiscussionEngine(sleep=_no_sleep)
		await engine.start("Checkout redesign", roster=["Engineer"])

		engine.set_auto_mode(True, delay_seconds=1)
		self.assertEqual(engine.store.auto_mode_delay_seconds, 3.0)
		self.assertTrue(engine.auto_continue.pending)
		await engine.auto_continue.join()

		continues = [message for message in engine.store.messages() if message.text == "/continue"]
		self.assertEqual(len(continues), 2)
		self.assertTrue(engine.store.last_action_was_auto_continue)
		self.assertFalse(engine.auto_continue.pending)
		self.assertTrue(engine.store.auto_mode_enabled)

		await engine.submit("/help")
		self.assertFalse(engine.store.auto_mode_enabled)
		self.assertFalse(engine.auto_continue.pending)

	async def test_clear_command_resets_the_session(self) -> None:
		engine = DiscussionEngine(sleep=_no_sleep)
		await engine.start("Checkout redesign", roster=["Engineer"])

		self.assertEqual(await engine.submit("/clear"), [])
		self.assertEqual(engine.store.messages(), ())
		self.assertIsNone(engine.store.topic)
		self.assertEqual(engine.store.questions(), [])

	async def test_generate_tasks(self) -> None:
		engine = DiscussionEngine(sleep=_no_sleep)
		messages = await engine.generate_tasks()
		self.assertEqual(_texts(messages), [("System", "Cannot generate tasks without an active discussion topic.")])

		engine.store.set_topic("Checkout redesign")
		engine.set_roster(["Engineer"])
		messages = await engine.generate_tasks()
		self.assertEqual(messages[0].persona.name, "Scrum Leader")
		self.assertEqual(
			messages[-1].text,
			"Based on the recent discussion, I've generated 1 task. You can review them in the tracked items.",
		)
		self.assertEqual(len(engine.store.tasks()), 1)

	async def test_generate_tasks_failure_is_prefixed(self) -> None:
		engine, _ = _scripted_engine([ConfigurationError("API key for the selected provider (Local) is missing.")])
		messages = await engine.generate_tasks()
		self.assertEqual(
			messages[-1].text,
			"Failed to generate backlog: API key for the selected provider (Local) is missing.",
		)
		self.assertFalse(engine.busy)

	async def test_compile_documentation(self) -> None:
		engine = DiscussionEngine(sleep=_no_sleep)
		engine.store.set_topic("Checkout redesign")
		engine.set_roster(["Engineer"])

		messages = await engine.compile_documentation("Engineer")
		self.assertEqual(messages[0].text, "No active tasks found for Engineer to compile documentation from.")

		engine.add_task("Write the setup guide", assigned_persona="engineer")
		messages = await engine.compile_documentation("Engineer")
		self.assertEqual(messages[0].persona.name, "Engineer")
		self.assertFalse(messages[0].is_error)

	async def test_failed_story_generation_keeps_the_addressed_status(self) -> None:
		engine, _ = _scripted_engine([ConfigurationError("no key")])
		question = engine.store.add_question(
			"Should we support guest checkout?",
			origin_persona=engine.store.personas()["Engineer"],
			origin_message_id="m1",
		)

		self.assertTrue(await engine.update_question_status(question.id, "Addressed"))
		self.assertEqual(engine.store.get_question(question.id).status, "Addressed")
		self.assertEqual(engine.store.messages()[-1].text, "Failed to generate story: no key")
		self.assertFalse(await engine.update_question_status(question.id, "Addressed"))

	async def test_task_edits_drive_story_status(self) -> None:
		engine = DiscussionEngine(sleep=_no_sleep)
		story = engine.add_story(user_story="As a shopper I want saved carts", benefit="Retention", acceptance_criteria=["Persists"])
		task = engine.add_task("Persist the cart", story_id=story.id)
		self.assertEqual(engine.store.get_story(story.id).status, "Selected for Sprint")

		engine.update_task(task.id, status="Done")
		self.assertEqual(engine.store.get_story(story.id).status, "Done")

		engine.remove_task(task.id)
		self.assertEqual(engine.store.get_story(story.id).status, "Done")
		with self.assertRaises(InvalidTransitionError):
			engine.add_task("Orphan", assigned_persona="Nobody")

	def test_configure_validates_models(self) -> None:
		engine = DiscussionEngine(sleep=_no_sleep)
		engine.configure(provider="OpenAI", model="gpt-4o", api_keys={"OpenAI": "sk-1", "Google": ""}, num_thoughts=3)
		self.assertEqual(engine.store.config.provider, "OpenAI")
		self.assertEqual(engine.store.config.api_keys, {"OpenAI": "sk-1"})
		self.assertEqual(engine.store.config.num_thoughts, 3)
		for kwargs in ({"model": "gpt-9"}, {"provider": "Google", "model": "gpt-4o"}, {"provider": "Google"}):
			with self.subTest(kwargs=kwargs):
				with self.assertRaises(ConfigurationError):
					engine.configure(**kwargs)

	async def test_import_replaces_the_discussion(self) -> None:
		engine = DiscussionEngine(sleep=_no_sleep)
		await engine.start("Checkout redesign", roster=["Engineer"])
		records = engine.export_session()

		other = DiscussionEngine(sleep=_no_sleep)
		notice = other.import_session(records)

		self.assertEqual(other.store.topic, "Checkout redesign")
		self.assertIn(f"Successfully imported {len(records)} messages.", notice.text)
		self.assertEqual(other.store.questions(), [])
