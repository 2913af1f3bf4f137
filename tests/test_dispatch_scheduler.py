import json
from unittest import IsolatedAsyncioTestCase, TestCase

from agile_bloom.backend.engine import prompts
from agile_bloom.backend.engine.config import EngineSettings
from agile_bloom.backend.engine.errors import (
	ConfigurationError,
	EntityNotFoundError,
	InvalidTransitionError,
	QuotaExceededError,
)
from agile_bloom.backend.engine.providers import ProviderAdapter, ResponseRouter
from agile_bloom.backend.engine.scheduler import BulkResult, DispatchScheduler, derive_story_status
from agile_bloom.backend.engine.store import EntityStore
from agile_bloom.backend.engine.types import CommandIntent, ProviderReply, ProviderRequest, TrackedTask


class _ScriptedAdapter(ProviderAdapter):
	provider = "Local"

	def __init__(self, replies=()):
		super().__init__()
		self.replies = list(replies)
		self.requests = []

	async def generate(self, request: ProviderRequest) -> ProviderReply:
		self.requests.append(request)
		reply = self.replies.pop(0)
		if isinstance(reply, Exception):
			raise reply
		return ProviderReply(text=reply if isinstance(reply, str) else json.dumps(reply))


def _reply(expert, message="Noted.", **extra):
	payload = {"expert": expert, "message": message, "thoughts": [], "tasks": [], "stories": [], "work": None}
	payload.update(extra)
	return payload


async def _no_sleep(_seconds: float) -> None:
	return None


class _Harness:
	def __init__(self, replies=(), roster=("Engineer", "Artist")):
		self.store = EntityStore()
		self.store.set_topic("Checkout redesign")
		self.store.set_roster(list(roster))
		self.adapter = _ScriptedAdapter(replies)
		self.delays = []
		settings = EngineSettings(call_delay_s=2.0, bulk_delay_s=3.0)
		router = ResponseRouter(settings=settings, adapters={"Local": self.adapter}, sleep=_no_sleep)
		self.scheduler = DispatchScheduler(self.store, router, sleep=self._sleep)

	async def _sleep(self, seconds: float) -> None:
		self.delays.append(seconds)

	def speakers(self):
		return [message.persona.name for message in self.store.messages()]


class DeriveStoryStatusTests(TestCase):
	def _task(self, status):
		return TrackedTask(id="t", description="d", created_by="AI", timestamp=0, order=0, topic_context="", status=status)

	def test_aggregation_rules(self) -> None:
		self.assertIsNone(derive_story_status([]))
		self.assertEqual(derive_story_status([self._task("Done"), self._task("Done")]), "Done")
		self.assertEqual(derive_story_status([self._task("Done"), self._task("In Progress")]), "In Progress")
		self.assertEqual(derive_story_status([self._task("Done"), self._task("To Do")]), "Selected for Sprint")


class DispatchSchedulerTests(IsolatedAsyncioTestCase):
	async def test_round_robin_puts_leader_first_and_waits_between_calls(self) -> None:
		harness = _Harness([_reply("Scrum Leader"), _reply("Engineer"), _reply("Artist")])

		count = await harness.scheduler.round_robin("/continue", is_command=True)

		self.assertEqual(count, 3)
		self.assertEqual(harness.speakers(), ["Scrum Leader", "Engineer", "Artist"])
		self.assertEqual(harness.delays, [2.0, 2.0])
		self.assertIn("You MUST respond as Scrum Leader.", harness.adapter.requests[0].system_prompt)
		self.assertIn("You MUST respond as Artist.", harness.adapter.requests[2].system_prompt)

	async def test_breakdown_calls_each_non_leader_and_links_tasks(self) -> None:
		names = ("Engineer", "Artist", "Linguist")
		harness = _Harness(
			[_reply(name, tasks=[{"description": f"Document for {name}", "assignedTo": name}]) for name in names],
			roster=names,
		)
		story = harness.store.add_story(user_story="As a shopper I want saved carts", benefit="Retention", created_by="AI")

		count = await harness.scheduler.breakdown(story.id)

		self.assertEqual(count, 3)
		self.assertEqual(harness.delays, [2.0, 2.0])
		tasks = harness.store.tasks_for_story(story.id)
		self.assertEqual([task.assigned_persona for task in tasks], list(names))
		self.assertTrue(all(task.created_by == "AI" for task in tasks))
		for request in harness.adapter.requests:
			self.assertIn("Documentation Task Breakdown Request", request.user_message)
		summaries = [message.text for message in harness.store.messages() if message.persona.name == "System"]
		self.assertIn(
			f"Based on the recent discussion, I've generated 1 task for story #{prompts.short_id(story.id)}. "
			"You can review them in the tracked items.",
			summaries,
		)

	async def test_addressed_question_asks_leader_for_one_story(self) -> None:
		story = {"userStory": "As a user I want guest checkout", "benefit": "Less friction", "acceptanceCriteria": ["No login"]}
		harness = _Harness([_reply("Scrum Leader", stories=[story])])
		question = harness.store.add_question(
			"Should we support guest checkout?",
			origin_persona=harness.store.personas()["Artist"],
			origin_message_id="m1",
		)

		self.assertTrue(await harness.scheduler.update_question_status(question.id, "Addressed"))
		self.assertFalse(await harness.scheduler.update_question_status(question.id, "Addressed"))

		self.assertEqual(len(harness.adapter.requests), 1)
		self.assertIn("marked 'Addressed'", harness.adapter.requests[0].user_message)
		stories = harness.store.stories()
		self.assertEqual(len(stories), 1)
		self.assertEqual(stories[0].origin_question_id, question.id)
		self.assertEqual(stories[0].created_by, "AI")

	async def test_dismissed_and_addressing_transitions(self) -> None:
		harness = _Harness([_reply("Scrum Leader"), _reply("Engineer"), _reply("Artist")])
		artist = harness.store.personas()["Artist"]
		dismissed = harness.store.add_question("Is dark mode needed?", origin_persona=artist, origin_message_id="m1")
		discussed = harness.store.add_question("How do refunds work?", origin_persona=artist, origin_message_id="m2")

		self.assertTrue(await harness.scheduler.update_question_status(dismissed.id, "Dismissed"))
		self.assertEqual(harness.adapter.requests, [])

		await harness.scheduler.update_question_status(discussed.id, "Addressing")
		self.assertEqual(len(harness.adapter.requests), 3)
		self.assertIn("How do refunds work?", harness.adapter.requests[0].user_message)

		with self.assertRaises(InvalidTransitionError):
			await harness.scheduler.update_question_status(discussed.id, "Closed")

	async def test_bulk_update_collects_failures_and_paces_calls(self) -> None:
		harness = _Harness()
		artist = harness.store.personas()["Artist"]
		first = harness.store.add_question("First open point here?", origin_persona=artist, origin_message_id="m1")
		second = harness.store.add_question("Second open point here?", origin_persona=artist, origin_message_id="m2")
		harness.store.set_question_status(second.id, "Dismissed")

		result = await harness.scheduler.bulk_update_questions([first.id, second.id, "missing"], "Dismissed")

		self.assertEqual(result.updated, [first.id])
		self.assertEqual(result.unchanged, [second.id])
		self.assertIn("missing", result.failures)
		self.assertEqual(harness.delays, [])

	async def test_story_status_follows_its_tasks(self) -> None:
		harness = _Harness()
		store = harness.store
		story = store.add_story(user_story="Story", benefit="B", created_by="User")
		first = store.add_task("one", created_by="User", story_id=story.id)
		second = store.add_task("two", created_by="User", story_id=story.id)

		harness.scheduler.update_task(first.id, status="In Progress")
		self.assertEqual(store.get_story(story.id).status, "In Progress")
		harness.scheduler.update_task(first.id, status="Done")
		self.assertEqual(store.get_story(story.id).status, "Selected for Sprint")
		harness.scheduler.update_task(second.id, status="Done")
		self.assertEqual(store.get_story(story.id).status, "Done")

		other = store.add_story(user_story="Other", benefit="B", created_by="User")
		harness.scheduler.update_task(second.id, story_id=other.id)
		self.assertEqual(store.get_story(other.id).status, "Done")
		self.assertEqual(store.get_story(story.id).status, "Done")
		harness.scheduler.update_task(first.id, status="To Do")
		self.assertEqual(store.get_story(story.id).status, "Selected for Sprint")

	async def test_unknown_expert_reply_is_shown_as_system_with_error(self) -> None:
		harness = _Harness([_reply("Ghost Writer", thoughts=["Is this a material question for us?"])])

		await harness.scheduler.call_persona(harness.store.personas()["Engineer"], "/continue")

		messages = harness.store.messages()
		self.assertTrue(messages[0].is_error)
		self.assertEqual(messages[0].text, "AI returned an invalid expert role: Ghost Writer. Displaying as System.")
		self.assertEqual(messages[1].persona.name, "System")
		self.assertEqual(harness.store.questions(), [])

	async def test_thoughts_become_questions_and_memory_is_kept(self) -> None:
		harness = _Harness(
			[
				_reply(
					"Engineer",
					thoughts=["Should we cache carts?", "Should we cache carts?", "ok", "Consider the mobile layout carefully"],
					memoryEntry="Carts must persist",
				)
			]
		)

		message = await harness.scheduler.call_persona(harness.store.personas()["Engineer"], "hello", is_command=False)

		texts = [question.text for question in harness.store.questions()]
		self.assertEqual(texts, ["Should we cache carts?", "Consider the mobile layout carefully"])
		self.assertTrue(all(question.origin_message_id == message.id for question in harness.store.questions()))
		self.assertEqual(harness.store.memory(), ["Carts must persist"])
		self.assertFalse(message.is_command_response)

	async def test_generated_items_are_summarized(self) -> None:
		story = {"userStory": "As a user I want X", "benefit": "Y", "acceptanceCriteria": ["Z"]}
		tasks = [{"description": "Task A", "assignedTo": "Engineer"}, {"description": "Task B", "assignedTo": "Nobody"}]
		harness = _Harness([_reply("Scrum Leader", tasks=tasks, stories=[story])])

		await harness.scheduler.generate_tasks_from_context()

		self.assertEqual(
			harness.store.messages()[-1].text,
			"Based on the recent discussion, I've generated 2 tasks and 1 user story. You can review them in the tracked items.",
		)
		self.assertEqual([task.assigned_persona for task in harness.store.tasks()], ["Engineer", None])
		self.assertIn("Backlog Generation Request", harness.adapter.requests[0].user_message)

	async def test_leader_story_table_creates_stories(self) -> None:
		harness = _Harness()
		question = harness.store.add_question(
			"What about saved carts?",
			origin_persona=harness.store.personas()["Engineer"],
			origin_message_id="m1",
		)
		table = (
			"| ID | User Story | Benefit/Value | Initial Acceptance Criteria |\n"
			"|---|---|---|---|\n"
			f"| {prompts.short_id(question.id)} | As a shopper I want saved carts | Retention | Cart persists |\n"
		)
		harness.adapter.replies.append(_reply("Scrum Leader", message="Here are the stories.", work=table))

		await harness.scheduler.run(CommandIntent(action="single", user_message_text="/stories", target_persona="Scrum Leader"))

		stories = harness.store.stories()
		self.assertEqual(len(stories), 1)
		self.assertEqual(stories[0].user_story, "As a shopper I want saved carts")
		self.assertEqual(stories[0].origin_question_id, question.id)
		self.assertEqual(
			harness.store.messages()[-1].text,
			"Generated 1 user story. View and manage them in the stories list.",
		)

	async def test_tasks_for_a_removed_story_are_added_unlinked(self) -> None:
		harness = _Harness()
		parsed_reply = _reply("Engineer", tasks=[{"description": "Late task"}])
		harness.adapter.replies.append(parsed_reply)

		await harness.scheduler.call_persona(harness.store.personas()["Engineer"], "x", story_id="gone")

		self.assertIsNone(harness.store.tasks()[0].story_id)

	async def test_run_rejects_unknown_targets_and_local_intents(self) -> None:
		harness = _Harness()
		with self.assertRaises(EntityNotFoundError):
			await harness.scheduler.run(CommandIntent(action="single", user_message_text="/x", target_persona="Nobody"))
		with self.assertRaises(InvalidTransitionError):
			await harness.scheduler.run(CommandIntent(action="local", user_message_text="/questions"))

	async def test_compile_documentation_needs_open_tasks(self) -> None:
		harness = _Harness([_reply("Engineer", work="# Docs")])
		with self.assertRaises(EntityNotFoundError) as ctx:
			await harness.scheduler.compile_documentation("Engineer")
		self.assertEqual(ctx.exception.message, "No active tasks found for Engineer to compile documentation from.")

		harness.store.add_task("Write the API guide", created_by="AI", assigned_persona="Engineer")
		message = await harness.scheduler.compile_documentation("Engineer")
		self.assertEqual(message.work, "# Docs")
		self.assertIn("Write the API guide", harness.adapter.requests[0].user_message)

	async def test_narrative_summary_refresh(self) -> None:
		harness = _Harness([_reply("Scrum Leader", message="The team aligned on carts."), ConfigurationError("no key")])
		self.assertIsNone(await harness.scheduler.refresh_narrative_summary())

		harness.store.add_message("User", "hello")
		harness.store.add_message("Engineer", "hi")
		self.assertEqual(await harness.scheduler.refresh_narrative_summary(), "The team aligned on carts.")

		self.assertIsNone(await harness.scheduler.refresh_narrative_summary())
		self.assertEqual(harness.store.narrative_summary, "Error updating summary.")

	async def test_quota_error_during_summary_refresh_is_not_swallowed(self) -> None:
		harness = _Harness([RuntimeError("429 insufficient_quota")])
		harness.store.add_message("User", "hello")
		harness.store.add_message("Engineer", "hi")

		with self.assertRaises(QuotaExceededError):
			await harness.scheduler.refresh_narrative_summary()

		self.assertEqual(len(harness.adapter.requests), 1)
		self.assertEqual(harness.store.narrative_summary, "")

	async def test_bulk_update_keeps_partial_result_when_quota_stops_it(self) -> None:
		harness = _Harness([_reply("Scrum Leader"), _reply("Engineer"), _reply("Artist"), RuntimeError("billing hard limit")])
		artist = harness.store.personas()["Artist"]
		first = harness.store.add_question("First open point here?", origin_persona=artist, origin_message_id="m1")
		second = harness.store.add_question("Second open point here?", origin_persona=artist, origin_message_id="m2")
		third = harness.store.add_question("Third open point here?", origin_persona=artist, origin_message_id="m3")
		result = BulkResult()

		with self.assertRaises(QuotaExceededError):
			await harness.scheduler.bulk_update_questions([first.id, second.id, third.id], "Addressing", result)

		self.assertEqual(result.updated, [first.id])
		self.assertIn(second.id, result.failures)
		self.assertFalse(result.seen(third.id))
		self.assertEqual(harness.store.get_question(first.id).status, "Addressing")
