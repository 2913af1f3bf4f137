import itertools
from unittest import TestCase

from agile_bloom.backend.engine.commands import (
	AVAILABLE_COMMANDS,
	NO_TOPIC_MESSAGE,
	CommandInterpreter,
	help_text,
	requests_search,
)
from agile_bloom.backend.engine.store import EntityStore


def _store(ids=()) -> EntityStore:
	fallback = (f"auto{index}" for index in itertools.count(1))
	sequence = itertools.chain(ids, fallback)
	store = EntityStore(clock=lambda: 1000.0, id_factory=lambda: next(sequence))
	return store


def _started(ids=()) -> EntityStore:
	store = _store(ids)
	store.set_topic("Checkout redesign")
	store.set_roster(["Engineer", "Artist"])
	return store


class CommandInterpreterTests(TestCase):
	def test_free_text_without_topic_is_an_error(self) -> None:
		intent = CommandInterpreter(_store()).interpret("hello team")
		self.assertEqual(intent.action, "error")
		self.assertEqual(intent.error_message, NO_TOPIC_MESSAGE)

	def test_free_text_with_topic_goes_round_robin(self) -> None:
		intent = CommandInterpreter(_started()).interpret("  what about payments?  ")
		self.assertEqual(intent.action, "round_robin")
		self.assertEqual(intent.ai_instruction_text, "what about payments?")

	def test_unknown_command_points_at_help(self) -> None:
		intent = CommandInterpreter(_started()).interpret("/dance now")
		self.assertEqual(intent.action, "error")
		self.assertIn("/dance", intent.error_message)
		self.assertIn("/help", intent.error_message)

	def test_continue_takes_no_arguments(self) -> None:
		interpreter = CommandInterpreter(_started())
		self.assertEqual(interpreter.interpret("/continue now").action, "error")
		intent = interpreter.interpret("/continue")
		self.assertEqual(intent.action, "round_robin")
		self.assertEqual(intent.ai_instruction_text, "/continue")

	def test_round_robin_commands_pass_their_arguments(self) -> None:
		intent = CommandInterpreter(_started()).interpret("/suggest Focus on mobile first")
		self.assertEqual(intent.action, "round_robin")
		self.assertEqual(intent.ai_instruction_text, "Focus on mobile first")

	def test_elaborate_targets_active_persona_with_assigned_tasks(self) -> None:
		store = _started()
		store.add_task("Build the API", created_by="AI", assigned_persona="Engineer")
		intent = CommandInterpreter(store).interpret("/elaborate engineer")
		self.assertEqual(intent.action, "single")
		self.assertEqual(intent.target_persona, "Engineer")
		self.assertEqual(intent.assigned_tasks_context, "- [To Do] Build the API")

	def test_persona_commands_require_an_active_persona(self) -> None:
		interpreter = CommandInterpreter(_started())
		inactive = interpreter.interpret("/show-work Linguist")
		self.assertEqual(inactive.action, "error")
		self.assertIn("Linguist", inactive.error_message)
		self.assertEqual(interpreter.interpret("/elaborate").action, "error")

	def test_multi_word_persona_names_resolve(self) -> None:
		intent = CommandInterpreter(_started()).interpret("/elaborate Scrum Leader")
		self.assertEqual(intent.action, "single")
		self.assertEqual(intent.target_persona, "Scrum Leader")

	def test_analyze_resolves_prefix_and_rejects_ambiguity(self) -> None:
		store = _started(ids=["abc123", "abd999"])
		store.add_story(user_story="As a shopper I want one-click pay", benefit="Faster", created_by="AI")
		store.add_task("Wire the button", created_by="AI")
		interpreter = CommandInterpreter(store)

		ambiguous = interpreter.interpret("/analyze ab")
		self.assertEqual(ambiguous.action, "error")
		self.assertIn("ambiguous", ambiguous.error_message)

		missing = interpreter.interpret("/analyze zzz")
		self.assertEqual(missing.action, "error")
		self.assertIn("not found", missing.error_message)

		intent = interpreter.interpret("/analyze abc")
		self.assertEqual(intent.action, "single")
		self.assertEqual(intent.target_persona, "Scrum Leader")
		self.assertIn("FISH analysis", intent.ai_instruction_text)
		self.assertIn("one-click pay", intent.ai_instruction_text)

	def test_breakdown_selects_story_for_sprint(self) -> None:
		store = _started(ids=["s1aaaa", "s2bbbb"])
		first = store.add_story(user_story="Story one", benefit="B", created_by="AI")
		second = store.add_story(user_story="Story two", benefit="B", created_by="AI")
		store.update_story(second.id, derived=True, status="Done")
		interpreter = CommandInterpreter(store)

		intent = interpreter.interpret("/breakdown s1")
		self.assertEqual(intent.action, "round_robin")
		self.assertEqual(intent.breakdown_story_id, first.id)
		self.assertEqual(store.get_story(first.id).status, "Selected for Sprint")

		interpreter.interpret("/breakdown s2")
		self.assertEqual(store.get_story(second.id).status, "Done")

	def test_questions_discuss_marks_question_addressing(self) -> None:
		store = _started(ids=["q1xxxx"])
		question = store.add_question(
			"Should we support guest checkout?",
			origin_persona=store.personas()["Artist"],
			origin_message_id="m0",
		)
		interpreter = CommandInterpreter(store)

		intent = interpreter.interpret("/questions discuss q1")
		self.assertEqual(intent.action, "round_robin")
		self.assertEqual(intent.question_id, question.id)
		self.assertEqual(store.get_question(question.id).status, "Addressing")
		self.assertIn("guest checkout", intent.ai_instruction_text)
		self.assertEqual(interpreter.interpret("/questions").action, "local")

	def test_stories_uses_addressed_questions_and_filter(self) -> None:
		store = _started()
		interpreter = CommandInterpreter(store)
		self.assertEqual(interpreter.interpret("/stories").action, "local")

		engineer = store.personas()["Engineer"]
		payments = store.add_question("How do refunds work?", origin_persona=engineer, origin_message_id="m1")
		shipping = store.add_question("Which carriers do we support?", origin_persona=engineer, origin_message_id="m2")
		store.set_question_status(payments.id, "Addressed")
		store.set_question_status(shipping.id, "Addressed")

		intent = interpreter.interpret("/stories refunds")
		self.assertEqual(intent.action, "single")
		self.assertEqual(intent.target_persona, "Scrum Leader")
		self.assertIn("refunds", intent.ai_instruction_text)
		self.assertNotIn("carriers", intent.ai_instruction_text)
		self.assertIn("'User Story'", intent.ai_instruction_text)

	def test_sprint_planning_without_stories_is_local(self) -> None:
		store = _started()
		interpreter = CommandInterpreter(store)
		self.assertEqual(interpreter.interpret("/sprint-planning").action, "local")
		store.add_story(user_story="Story", benefit="B", created_by="AI")
		intent = interpreter.interpret("/sprint-planning")
		self.assertEqual(intent.action, "single")
		self.assertEqual(intent.target_persona, "Scrum Leader")

	def test_help_and_clear_are_noops_with_side_effects(self) -> None:
		store = _started()
		store.add_message("User", "hello")
		interpreter = CommandInterpreter(store)

		self.assertEqual(interpreter.interpret("/help").action, "noop")
		self.assertTrue(store.is_help_open)
		self.assertEqual(interpreter.interpret("/clear").action, "noop")
		self.assertEqual(store.messages(), ())
		self.assertIsNone(store.topic)

	def test_backlog_requires_topic(self) -> None:
		self.assertEqual(CommandInterpreter(_store()).interpret("/backlog").action, "error")
		intent = CommandInterpreter(_started()).interpret("/summary")
		self.assertEqual(intent.action, "single")
		self.assertEqual(intent.target_persona, "Scrum Leader")

	def test_search_is_requested_only_by_lookup_commands(self) -> None:
		self.assertTrue(requests_search("/ask what is new?"))
		self.assertTrue(requests_search("/SEARCH trends"))
		self.assertFalse(requests_search("/suggest search the web"))
		self.assertFalse(requests_search(None))

	def test_help_text_lists_every_command(self) -> None:
		text = help_text()
		for command in AVAILABLE_COMMANDS:
			self.assertIn(command.name, text)
