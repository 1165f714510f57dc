"""Constants for token accounting and truncation."""

# Framing cost the upstream request adds around each logical message
TOKEN_OVERHEAD_PER_MESSAGE = 5
FORMATTING_OVERHEAD = 50
SAFETY_MARGIN_RATIO = 0.95

# Used when no tokenizer / model window is known
DEFAULT_MAX_INPUT_TOKENS = 8000

CHARS_PER_TOKEN_ESTIMATE = 4.0
MIN_CONTENT_TOKENS_FOR_PARTIAL = 10
SAFETY_BUFFER_FOR_PARTIAL = 5

# Below this many target tokens the diff is summarized instead of hunk-trimmed
MIN_DIFF_TOKENS_FOR_HUNKS = 100
MAX_SUMMARY_FILES = 10

CONTEXT_TRUNCATED = (
    "\n\n[Context truncated to fit token limit. Some information might be missing.]"
)
PARTIAL_TRUNCATED = "\n\n[File content partially truncated to fit token limit]"
HUNKS_TRUNCATED = (
    "\n\n[Large diff truncated to preserve structural integrity. "
    "Some hunks omitted to fit token limits.]"
)
EMERGENCY_HEADER = "[EMERGENCY TRUNCATION: Diff too large for analysis]"
EMERGENCY_FOOTER = (
    "[Complete diff analysis unavailable due to token limits. "
    "Consider analyzing smaller change sets.]"
)

CONTEXT_FULL_NOTICE = (
    "Previous tool results removed due to context limits. "
    "Provide final analysis with available information."
)
FINAL_ANSWER_REQUEST = (
    "Context window is full. Please provide your final analysis based on "
    "the information you have gathered so far."
)

# In-loop context window management
CONTEXT_WARNING_RATIO = 0.9
CONTEXT_CLEANUP_RATIO = 0.8
MAX_TOOL_RESPONSE_CHARS = 8000
# Share of the window that must stay free for tool round trips
MIN_TOOL_SPACE_RATIO = 0.3

TOOLS_DISABLED_NOTICE = (
    "Tools disabled due to large diff. Analysis based on truncated diff content."
)
RESPONSE_TOO_LARGE = (
    "Response too large. Please refine parameters for more specific results."
)
