"""
Classify captured pane text into typed blocks.

Each non-blank line gets a BlockType from ordered pattern rules, then a
transition table decides whether the line continues the current block or
starts a new one. IncrementalParser reuses the blocks of an unchanged
leading region and re-parses only from there; its output always equals
parse_blocks() on the same text, block ids included.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class BlockType(str, Enum):
    USER_PROMPT = "user-prompt"
    AGENT_RESPONSE = "agent-response"
    TOOL_CALL = "tool-call"
    TOOL_RESULT = "tool-result"
    SEPARATOR = "separator"
    STATUS = "status"
    SPINNER = "spinner"
    PLAIN = "plain"


USER_PROMPT = re.compile(r"^❯\s")
AGENT_RESPONSE = re.compile(r"^●\s+\S")
WORKING_INDICATOR = re.compile(r"^●\s*$")
TOOL_RESULT = re.compile(r"^(\s*)⎿")
INDENTED = re.compile(r"^(\s{2,}|\t)")
SEPARATOR = re.compile(r"^─{5,}")
TOOL_CALL = re.compile(r"^●\s+([\w-]+)\s*\(")
MCP_TOOL_CALL = re.compile(r"^●\s+([\w-]+)\s+-\s+(\w+)\s+\(MCP\)")
SPINNER = re.compile(r"[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏⠐⠂⠄]")
STATUS_HINT = re.compile(r"(Esc to interrupt|ctrl\+c to interrupt|Esc to cancel|to cycle\))", re.IGNORECASE)
PROGRESS_BAR = re.compile(r"^\s*[\w-]+\s+\[.*\]\s+\w+@")

# Spinner glyphs inside long lines are content, not a spinner
MAX_SPINNER_LINE = 100


@dataclass
class Block:
    id: int
    type: BlockType
    content: str
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.id, "type": self.type.value, "content": self.content}
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data


def is_new_tool_call(line: str) -> bool:
    return bool(TOOL_CALL.match(line) or MCP_TOOL_CALL.match(line))


def extract_tool_name(line: str) -> Optional[str]:
    """'● Bash(ls)' -> 'Bash'; '● github - get_issue (MCP)' -> 'github:get_issue'."""
    mcp = MCP_TOOL_CALL.match(line)
    if mcp:
        return f"{mcp.group(1)}:{mcp.group(2)}"
    call = TOOL_CALL.match(line)
    if call:
        return call.group(1)
    return None


def classify_line(line: str, previous_type: Optional[BlockType] = None) -> BlockType:
    """Type of one line, most specific rule first."""
    if SEPARATOR.match(line):
        return BlockType.SEPARATOR
    if is_new_tool_call(line):
        return BlockType.TOOL_CALL
    if WORKING_INDICATOR.match(line):
        return BlockType.SPINNER
    if USER_PROMPT.match(line):
        return BlockType.USER_PROMPT
    if AGENT_RESPONSE.match(line):
        return BlockType.AGENT_RESPONSE
    if TOOL_RESULT.match(line):
        return BlockType.TOOL_RESULT
    # Indented lines carry on a multi-line call or result
    if previous_type in (BlockType.TOOL_CALL, BlockType.TOOL_RESULT) and INDENTED.match(line):
        return previous_type
    if STATUS_HINT.search(line) or PROGRESS_BAR.match(line):
        return BlockType.STATUS
    if SPINNER.search(line) and len(line) < MAX_SPINNER_LINE:
        return BlockType.SPINNER
    return BlockType.PLAIN


# TRANSITIONS[current][new] -> start a new block? Unlisted pairs break on
# type change.
TRANSITIONS: Dict[BlockType, Dict[BlockType, bool]] = {
    BlockType.USER_PROMPT: {BlockType.PLAIN: False, BlockType.SPINNER: False},
    BlockType.AGENT_RESPONSE: {BlockType.PLAIN: False, BlockType.SPINNER: False},
    BlockType.TOOL_CALL: {
        BlockType.TOOL_CALL: False,
        BlockType.TOOL_RESULT: False,
        BlockType.SPINNER: False,
    },
    BlockType.TOOL_RESULT: {BlockType.TOOL_RESULT: False, BlockType.SPINNER: False},
    BlockType.SEPARATOR: {},
    BlockType.STATUS: {BlockType.STATUS: False},
    BlockType.SPINNER: {BlockType.SPINNER: False},
    BlockType.PLAIN: {BlockType.PLAIN: False},
}


def should_start_new_block(current_type: Optional[BlockType], new_type: BlockType, line: str) -> bool:
    if current_type is None:
        return True
    if new_type in (BlockType.SEPARATOR, BlockType.USER_PROMPT):
        return True
    if new_type is BlockType.TOOL_CALL and is_new_tool_call(line):
        return True
    decision = TRANSITIONS.get(current_type, {}).get(new_type)
    if decision is not None:
        return decision
    return current_type is not new_type


def content_lines(text: Optional[str]) -> List[str]:
    """Non-blank lines; blank lines only add vertical space."""
    if not text:
        return []
    return [line for line in text.split("\n") if line.strip()]


def _parse_lines(
    lines: List[str],
    start: int = 0,
    first_id: int = 1,
    previous_type: Optional[BlockType] = None,
) -> Tuple[List[Block], List[int]]:
    """Parse lines[start:] into blocks; also returns each block's start index.

    `start` must be a block boundary; `previous_type` is the type of the
    block that ended just before it, used for line classification only.
    """
    blocks: List[Block] = []
    starts: List[int] = []
    current: Optional[Block] = None
    next_id = first_id
    for index in range(start, len(lines)):
        line = lines[index]
        context = current.type if current is not None else previous_type
        line_type = classify_line(line, context)
        if current is None or should_start_new_block(current.type, line_type, line):
            current = Block(id=next_id, type=line_type, content=line)
            next_id += 1
            if line_type is BlockType.TOOL_CALL:
                tool_name = extract_tool_name(line)
                if tool_name:
                    current.metadata = {"toolName": tool_name}
            blocks.append(current)
            starts.append(index)
        else:
            current.content += "\n" + line
    return blocks, starts


def parse_blocks(text: Optional[str]) -> List[Block]:
    """Full parse of a capture."""
    blocks, _ = _parse_lines(content_lines(text))
    return blocks


@dataclass
class IncrementalParser:
    """Parser that remembers the previous capture.

    A block is reused only when the block after it also starts inside the
    unchanged leading lines: then both its content and the decision to
    close it were made on identical input. Parsing resumes at the first
    block that isn't reused.
    """

    lines: List[str] = field(default_factory=list)
    blocks: List[Block] = field(default_factory=list)
    starts: List[int] = field(default_factory=list)

    def reset(self) -> None:
        self.lines = []
        self.blocks = []
        self.starts = []

    def parse(self, text: Optional[str]) -> List[Block]:
        new_lines = content_lines(text)
        if not new_lines:
            self.reset()
            return self.blocks

        common = min(len(self.lines), len(new_lines))
        diverge = 0
        while diverge < common and self.lines[diverge] == new_lines[diverge]:
            diverge += 1
        if diverge == len(self.lines) == len(new_lines):
            return self.blocks

        reused = 0
        while reused + 1 < len(self.blocks) and self.starts[reused + 1] < diverge:
            reused += 1

        resume = self.starts[reused] if reused < len(self.starts) else 0
        previous_type = self.blocks[reused - 1].type if reused else None
        tail, tail_starts = _parse_lines(new_lines, resume, first_id=reused + 1, previous_type=previous_type)

        self.lines = new_lines
        self.blocks = self.blocks[:reused] + tail
        self.starts = self.starts[:reused] + tail_starts
        return self.blocks


def parse_incremental(text: Optional[str], parser: IncrementalParser) -> List[Block]:
    return parser.parse(text)


def block_stats(blocks: List[Block]) -> Dict[str, Any]:
    counts = {BlockType.USER_PROMPT: 0, BlockType.AGENT_RESPONSE: 0, BlockType.TOOL_CALL: 0}
    spinner = False
    for block in blocks:
        if block.type in counts:
            counts[block.type] += 1
        elif block.type is BlockType.SPINNER:
            spinner = True
    return {
        "userPrompts": counts[BlockType.USER_PROMPT],
        "agentResponses": counts[BlockType.AGENT_RESPONSE],
        "toolCalls": counts[BlockType.TOOL_CALL],
        "hasActiveSpinner": spinner,
    }
