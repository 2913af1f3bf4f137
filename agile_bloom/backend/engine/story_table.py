from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List


_CRITERIA_SPLIT = re.compile(r"<br\s*/?>|\n|;\s+", re.IGNORECASE)


@dataclass(frozen=True)
class StoryRow:
	user_story: str
	benefit: str
	acceptance_criteria: List[str]
	question_ref: str = ""


def _split_row(line: str) -> List[str]:
	return [part.strip() for part in line.strip().strip("|").split("|")]


def _is_separator(line: str) -> bool:
	return "|" in line and "---" in line


def _split_criteria(value: str) -> List[str]:
	return [item.strip(" -") for item in _CRITERIA_SPLIT.split(value) if item.strip(" -")]


def parse_table(markdown: str) -> List[Dict[str, str]]:
	lines = (markdown or "").strip().splitlines()
	header_idx = None
	for i, line in enumerate(lines):
		if "|" in line and not _is_separator(line):
			header_idx = i
			break
	if header_idx is None:
		return []
	separator_idx = None
	for i in range(header_idx + 1, len(lines)):
		if _is_separator(lines[i]):
			separator_idx = i
			break
	if separator_idx is None:
		return []

	headers = [header for header in _split_row(lines[header_idx]) if header]
	rows: List[Dict[str, str]] = []
	for line in lines[separator_idx + 1 :]:
		if "|" not in line:
			continue
		parts = _split_row(line)
		if len(parts) != len(headers) or not any(parts):
			continue
		rows.append(dict(zip(headers, parts)))
	return rows


def parse_story_table(markdown: str) -> List[StoryRow]:
	"""Read stories from a markdown table with 'User Story' and 'Benefit/Value' columns."""
	stories: List[StoryRow] = []
	for row in parse_table(markdown):
		lowered = {key.lower(): value for key, value in row.items()}
		if "user story" not in lowered or "benefit/value" not in lowered:
			continue
		user_story = lowered["user story"].strip()
		if not user_story:
			continue
		stories.append(
			StoryRow(
				user_story=user_story,
				benefit=lowered["benefit/value"].strip(),
				acceptance_criteria=_split_criteria(lowered.get("initial acceptance criteria", "")),
				question_ref=lowered.get("id", "").strip(),
			)
		)
	return stories
