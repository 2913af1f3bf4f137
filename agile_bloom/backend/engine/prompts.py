from __future__ import annotations

import json
import re
from typing import Dict, Iterable, List, Optional, Sequence

from agile_bloom.backend import constants
from agile_bloom.backend.engine.store import EntityStore
from agile_bloom.backend.engine.types import DiscussionMessage, Persona, TrackedQuestion, TrackedStory, TrackedTask


FISH_ANALYSIS_MARKER = "perform a fish analysis on the following item"

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}|\{(\w+)\}")

FISH_ANALYSIS_PROMPT = """
FISH Analysis for User Stories & Tasks

FISH applies systemic functional linguistic analysis to one user story or task to evaluate its
rationale, necessity and alignment with project goals.

Phase 1: Process Analysis
  - Collaborative Process: which team interactions are needed to complete this item?
  - Developmental Process: which product or code changes does this item entail?
  - Delivery Process: what value is delivered when this item is complete?

Phase 2: Dynamics Analysis
  - Authority: who decides on the scope and acceptance of this item?
  - Dependencies: what blocks or enables this item, and what depends on it?
  - Flow: how does this item affect the development pipeline and velocity?

Phase 3: Modal Analysis
  - Epistemic: how certain are the requirements and the implementation approach?
  - Deontic: what is the level of commitment (must-have, should-have, could-have)?
  - Dynamic: does the team have the skills and capacity to execute it?

Phase 4: Communication Analysis
  - Transparency: is everything the team needs to know about this item visible?
  - Assumptions: which assumptions are made about complexity, value or dependencies?
  - Impediments: what could block this item?

Recursive "Why" Protocol:
1. Immediate Why: why is this item needed in this sprint?
2. Feature Why: why does the parent feature need it?
3. Product Why: why does the product need the capability?
4. Organization Why: why does the organization need the capability?
5. Human Why: which user or coordination need does it ultimately serve?

Finish the analysis with:
- RATIONALE SCORE (1-5)
- CONFIDENCE SCORE (1-5)
- KEY FINDING: one sentence.
- RECOMMENDED ACTION: e.g. "Proceed as planned", "Refine acceptance criteria", "Re-evaluate priority".
"""

BACKLOG_HEALTH_INSTRUCTIONS = (
	"\nUser command is /backlog. Provide a health check of the product backlog. In your main 'message', "
	"summarize the number of stories and tasks in each status. Point out any items that seem high-risk, "
	"poorly defined, or have been inactive for a long time. Suggest 1-2 items that might benefit from a "
	"detailed `/analyze {id}` command."
)

SYSTEM_PROMPT_TEMPLATE = """
System:
You are a participant in a collaborative discussion emulating an Agile Daily Scrum.
The team consists of the following experts who will discuss the topic: {input_topic}.

The Core Workflow is: Discussion -> Questions -> User Stories -> Tasks.
1. AI Discussion: the team discusses the topic. Your "thoughts" become potential discussion points.
2. Track Questions: interesting "thoughts" are captured as Tracked Questions.
3. Generate User Stories: when the user marks a Tracked Question as 'Addressed', the Scrum Leader writes formal user stories for the product backlog.
4. Break Down Stories into Tasks: the "/breakdown" command asks the team to turn one story into concrete, actionable tasks.

The user facilitates this process. In "Auto Mode" the system may prompt the experts to '/continue' after a brief pause.
{{emulation_instructions}}
{{specific_task_instructions}}
{{assigned_tasks_section}}

Active Experts in this session:
{expert_list}

Persistent Context (Key points from earlier in the discussion to remember):
{persistent_memory_context}
--- End of Persistent Context ---

{{additional_context_section}}

Search Capability:
For "/ask" or "/search" requests seeking factual or current information, the system may run a web search. If so, synthesize the results into your answer. Citations are shown to the user.

User Commands & Expected Behavior (respond as the emulated expert for your turn):
- /ask, /suggest, /insight, etc.: provide your expert perspective. Your "thoughts" are tracked as potential questions.
- /show-work {expert_name}: if you are {expert_name}, display your work. Format scripts and code with markdown in the 'work' field.
- /continue: provide your next thought or action based on the current context.
- /backlog: the Scrum Leader provides a health check of the product backlog.
- /analyze {item_id}: the Scrum Leader performs a FISH analysis on the item. Place it in the 'work' field.
- /summary: the Scrum Leader provides a summary or burn-down in the 'work' field.
- /stories [filter]: the Scrum Leader turns tracked questions into user stories. Place them in the 'work' field.
- /sprint-planning: the Scrum Leader proposes a set of stories for the current sprint in the 'message' field.
- /breakdown {story_id}: each non-leader expert breaks the story down into tasks in the 'tasks' array.

Conversation History (last few turns):
{history}

Response Instructions:
1. Current topic: {input_topic}.
2. {{response_persona_instruction}}
3. For regular turns, provide a main message and {num_thoughts} "thoughts". These generate new questions.
4. When asked to generate stories or tasks, put them in the `stories` or `tasks` array fields and give a brief summary in `message`.
   - Stories: {"userStory": "...", "benefit": "...", "acceptanceCriteria": ["..."], "priority": "Medium", "sprintPoints": 5}
   - Tasks: {"description": "A clear, actionable task", "assignedTo": "Engineer"}
5. If your response is a key decision or summary, put a concise version in the `memoryEntry` field.
6. Your entire response MUST be a single, valid JSON object with no text outside it. Escape all string values (newlines as '\\\\n', quotes as '\\"').
   Example format:
   ```json
   {
       "expert": "Engineer",
       "emoji": "👨‍💻",
       "message": "Response...",
       "thoughts": ["Thought 1"],
       "work": null,
       "memoryEntry": "Key takeaway",
       "tasks": [],
       "stories": []
   }
   ```
Keep your response concise and in character.
"""

GENERATE_TASKS_PROMPT = """
**Backlog Generation Request**

As the Scrum Leader, review the entire conversation history and generate the complete list of actionable tasks required to reach the goals discussed.

1. Read the discussion, paying attention to problems, proposed solutions, feature requests and technical requirements.
2. Formulate distinct, concrete tasks, e.g. "Implement user authentication endpoint" or "Design the landing page mockup".
3. If a task clearly belongs to one expert (Engineer, Artist, Linguist), assign it to them.
4. Reply with a single JSON object. `message` is a brief summary string that MUST NOT contain task objects. Tasks go in the `tasks` array as {"description": "...", "assignedTo": "..."}. If no tasks can be derived, return an empty `tasks` array and explain why in `message`.

```json
{"expert": "Scrum Leader", "emoji": "🤔", "message": "I've generated a backlog of 8 tasks.", "tasks": [{"description": "A clear, actionable task", "assignedTo": "Engineer"}], "stories": [], "thoughts": [], "work": null, "memoryEntry": null}
```
"""

BREAKDOWN_PROMPT_TEMPLATE = """
**User Story Documentation Task Breakdown Request**

As an expert ({emulated_expert_name}), break the following user story down into documentation-focused tasks from your own perspective.

**User Story to Analyze:**
- **Story:** "{user_story_text}"
- **Benefit:** "{user_story_benefit}"
- **Acceptance Criteria:**
{user_story_ac}

**Your Instructions:**
1. From the perspective of a {emulated_expert_name} ({emulated_expert_description}), decide which documentation is required to describe the functionality, architecture, user interface and technical details of this story.
2. Create specific, actionable documentation tasks such as "Write API documentation for the login endpoint". These are not coding tasks.
3. Reply with a single JSON object. `message` summarizes your contribution and MUST NOT contain task objects. Every task goes in the `tasks` array with `"assignedTo": "{emulated_expert_name}"`. With nothing to contribute, return an empty `tasks` array and say so in `message`.

```json
{"expert": "{emulated_expert_name}", "emoji": "{expert_emoji_placeholder}", "message": "I've identified 3 documentation tasks.", "tasks": [{"description": "...", "assignedTo": "{emulated_expert_name}"}], "stories": [], "thoughts": [], "work": null, "memoryEntry": null}
```
"""

NARRATIVE_SUMMARY_PROMPT = """
**Narrative Summary Request**

As the Scrum Leader, write a running narrative summary of the discussion so far, like meeting minutes someone can read to get up to speed. Weave the key points, decisions and overall direction into one or two paragraphs rather than a list.
Reply with a single JSON object and put the summary in the `message` field. Do not use `thoughts` or `work`.
Example: {"expert": "Scrum Leader", "emoji": "🤔", "message": "The team began by exploring user onboarding...", "isCommandResponse": true}
"""

COMPILE_DOCUMENTATION_PROMPT_TEMPLATE = """
**Compile Documentation Request**

As the expert ({emulated_expert_name}), write one cohesive document that fulfils the following documentation tasks assigned to you.

**Documentation Tasks to Complete:**
{task_list}

**Your Instructions:**
1. Review each task to understand the scope required.
2. Write a single, well-structured Markdown document that covers all the tasks, organized into logical sections rather than one answer per task.
3. Reply with a single JSON object. Put the whole document in the `work` field as one valid JSON string (newlines as `\\n`, quotes as `\\"`, backslashes as `\\\\`). `message` is a brief summary of the action taken.

```json
{"expert": "{emulated_expert_name}", "emoji": "{expert_emoji_placeholder}", "message": "I have compiled the documentation based on the assigned tasks.", "work": "# Project Documentation\\n\\n## Section 1\\n...", "tasks": [], "stories": [], "thoughts": [], "memoryEntry": "Compiled documentation for the feature."}
```
"""


def fill_template(template: str, values: Dict[str, str]) -> str:
	"""Substitute ``{name}`` and ``{{name}}`` placeholders in a single pass.

	Inserted values are never rescanned, so user text that happens to contain a
	placeholder name is left alone. Unknown placeholders stay verbatim.
	"""

	def _substitute(match: re.Match) -> str:
		key = match.group(1) or match.group(2)
		return values[key] if key in values else match.group(0)

	return _PLACEHOLDER.sub(_substitute, template)


def escape_for_prompt(text: Optional[str]) -> str:
	if not text:
		return ""
	return json.dumps(text, ensure_ascii=False)[1:-1]


def short_id(item_id: str) -> str:
	return item_id[: constants.ID_PREFIX_LENGTH]


def format_history(messages: Sequence[DiscussionMessage], max_turns: int) -> str:
	lines: List[str] = []
	for message in list(messages)[-max_turns:]:
		line = f"{escape_for_prompt(message.persona.name)} ({message.persona.glyph}): {escape_for_prompt(message.text)}"
		if message.work:
			line += f"\nWORK:\n{escape_for_prompt(message.work)}"
		if message.citations:
			titles = ", ".join(citation.title for citation in message.citations)
			line += f"\n(Sources: {escape_for_prompt(titles)})"
		lines.append(line)
	return "\n\n".join(lines)


def format_task_lines(tasks: Iterable[TrackedTask]) -> str:
	return "\n".join(f"- [{task.status}] {task.description}" for task in tasks)


def analysis_instruction(item: TrackedStory | TrackedTask) -> str:
	if isinstance(item, TrackedStory):
		criteria = "\n- ".join(escape_for_prompt(criterion) for criterion in item.acceptance_criteria)
		description = (
			f"Type: User Story\nID: {item.id}\nStory: \"{escape_for_prompt(item.user_story)}\"\n"
			f"Benefit: \"{escape_for_prompt(item.benefit)}\"\nAcceptance Criteria:\n- {criteria}"
		)
	else:
		description = f"Type: Task\nID: {item.id}\nDescription: \"{escape_for_prompt(item.description)}\"\nStatus: {item.status}"
		if item.story_id:
			description += f"\nParent Story ID: {item.story_id}"
	return (
		"Please perform a FISH analysis on the following item. The analysis framework is provided in your system "
		"instructions. Place the full analysis in the 'work' field of your JSON response, and provide a brief summary "
		f"in the 'message' field.\n\nItem for Analysis:\n---\n{description}\n---"
	)


def sprint_planning_instruction(stories: Iterable[TrackedStory]) -> str:
	lines = [f"- [{story.priority}] Story #{short_id(story.id)}: {story.user_story}" for story in stories]
	return (
		"Please review the following high-priority user stories from the backlog and recommend a selection to form "
		"the current sprint. Explain your reasoning.\n\n" + "\n".join(lines)
	)


def _story_table_request() -> str:
	return "Present this as a markdown table with columns: 'ID', 'User Story', 'Benefit/Value', and 'Initial Acceptance Criteria'."


def _question_line(question: TrackedQuestion) -> str:
	return f"- ID {short_id(question.id)}: \"{escape_for_prompt(question.text)}\" (raised by {question.origin_persona})"


def stories_from_questions_instruction(questions: Iterable[TrackedQuestion]) -> str:
	return (
		"Please review the following 'Addressed' discussion points and generate formal user stories for the product "
		"backlog. Each story should have a clear user, action, and benefit, along with initial acceptance criteria. "
		f"{_story_table_request()}\n\n" + "\n".join(_question_line(question) for question in questions)
	)


def story_from_question_instruction(question: TrackedQuestion) -> str:
	return (
		"A key discussion point has been marked 'Addressed'. Please generate one formal user story for the product "
		"backlog based on this point and return it in the `stories` array. Use this question's full ID as the story "
		f"origin.\n\n{_question_line(question)}"
	)


def discuss_question_instruction(question: TrackedQuestion) -> str:
	return (
		"Let's focus the discussion on this specific question that was raised earlier by "
		f"{question.origin_persona}. Please provide your perspective. Question: \"{escape_for_prompt(question.text)}\""
	)


def breakdown_instruction(persona: Persona, story: TrackedStory) -> str:
	criteria = "\\n".join(f"- {escape_for_prompt(criterion)}" for criterion in story.acceptance_criteria)
	return fill_template(
		BREAKDOWN_PROMPT_TEMPLATE,
		{
			"emulated_expert_name": persona.name,
			"emulated_expert_description": escape_for_prompt(persona.description),
			"user_story_text": escape_for_prompt(story.user_story),
			"user_story_benefit": escape_for_prompt(story.benefit),
			"user_story_ac": criteria,
			"expert_emoji_placeholder": persona.glyph,
		},
	)


def compile_documentation_instruction(persona: Persona, tasks: Iterable[TrackedTask]) -> str:
	task_list = "\\n".join(f"- {escape_for_prompt(task.description)}" for task in tasks)
	return fill_template(
		COMPILE_DOCUMENTATION_PROMPT_TEMPLATE,
		{
			"emulated_expert_name": persona.name,
			"expert_emoji_placeholder": persona.glyph,
			"task_list": task_list,
		},
	)


def attach_text_file(instruction: str, *, name: str, content: str) -> str:
	return (
		f"The user has provided the following file content named \"{name}\". Please analyze and discuss it.\n\n"
		f"--- FILE CONTENT ---\n{content}\n--- END FILE CONTENT ---\n\nUser's prompt: {instruction}"
	)


class PromptAssembler:
	"""Builds the single system prompt sent with every provider call."""

	def __init__(self, store: EntityStore, *, history_turns: int = constants.DEFAULT_HISTORY_TURNS):
		self._store = store
		self._history_turns = max(1, history_turns)

	def _expert_list(self) -> str:
		return "\n".join(
			f"- {escape_for_prompt(persona.name)} ({persona.glyph}): {escape_for_prompt(persona.description)}"
			for persona in self._store.roster_personas()
		)

	def _memory_block(self) -> str:
		memory = self._store.memory()
		if not memory:
			return "No key points remembered yet."
		return "\n".join(f"- {escape_for_prompt(entry)}" for entry in memory)

	def _additional_context(self) -> str:
		blocks = [block.strip() for block in (self._store.context, self._store.repository_context or "") if block and block.strip()]
		if not blocks:
			return ""
		body = "\n\n".join(escape_for_prompt(block) for block in blocks)
		return (
			"\n--- Start of Additional Context ---\n"
			"This context was provided by the user to set the stage for the entire discussion:\n\n"
			f"{body}\n\n--- End of Additional Context ---\n"
		)

	@staticmethod
	def _assigned_tasks(assigned_tasks_context: Optional[str]) -> str:
		if not assigned_tasks_context or not assigned_tasks_context.strip():
			return ""
		return (
			"\n--- Start of Your Assigned Tasks ---\n"
			"This is a list of tasks currently assigned to you. When responding to commands like /show-work, "
			"please focus your response on these tasks.\n\n"
			f"{escape_for_prompt(assigned_tasks_context.strip())}\n--- End of Your Assigned Tasks ---\n"
		)

	def build(
		self,
		*,
		instruction: str,
		emulate: Optional[Persona] = None,
		num_thoughts: int = constants.DEFAULT_NUM_THOUGHTS,
		assigned_tasks_context: Optional[str] = None,
	) -> str:
		emulation = ""
		persona_instruction = (
			"Determine who should respond based on the flow of an Agile Daily Scrum, the current user input/command, "
			"and conversation history."
		)
		task_instructions = ""
		if emulate is not None:
			name = escape_for_prompt(emulate.name)
			emulation = f"\nYou are currently emulating: {name} ({emulate.glyph}). Your response MUST be from this expert's perspective."
			persona_instruction = f"You MUST respond as {name}. The \"expert\" field in your JSON output MUST be \"{name}\"."
			if emulate.name == constants.ROLE_SCRUM_LEADER:
				lowered = instruction.lower()
				if FISH_ANALYSIS_MARKER in lowered:
					task_instructions = (
						"\nFollow these specific instructions for the FISH Analysis on the item provided by the user: \n"
						f"{FISH_ANALYSIS_PROMPT}"
					)
				elif lowered.startswith("/backlog"):
					task_instructions = BACKLOG_HEALTH_INSTRUCTIONS

		topic = escape_for_prompt(self._store.topic) or "No topic set yet."
		return fill_template(
			SYSTEM_PROMPT_TEMPLATE,
			{
				"input_topic": topic,
				"num_thoughts": str(num_thoughts),
				"history": format_history(self._store.messages(), self._history_turns),
				"emulation_instructions": emulation,
				"response_persona_instruction": persona_instruction,
				"specific_task_instructions": task_instructions,
				"persistent_memory_context": self._memory_block(),
				"additional_context_section": self._additional_context(),
				"assigned_tasks_section": self._assigned_tasks(assigned_tasks_context),
				"expert_list": self._expert_list(),
			},
		)
