import os
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.environ.get("AGENT_DATA_DIR") or os.path.join(BASE_DIR, "db")
CHECKPOINT_DIR = os.path.join(DATA_DIR, "checkpoints")

PROMPTS_DIR = os.path.join(BASE_DIR, "prompts")
DEFAULT_SYSTEM_PROMPT_PATH = os.path.join(PROMPTS_DIR, "agent_system_prompt.md")
