"""
Constants and configuration values for Reddit context search.
"""

# Reddit Search
REDDIT_BASE = "https://www.reddit.com"
REDDIT_SEARCH_URL = f"{REDDIT_BASE}/search.json"
REDDIT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
SEARCH_PAGE_SIZE = 25
SEARCH_MAX_PAGES = 2
SEARCH_RESULT_LIMIT = 25
SEARCH_SORTS = ("relevance", "hot", "top", "new", "comments")
SEARCH_TIME_RANGES = ("hour", "day", "week", "month", "year", "all")
SNIPPET_MAX_CHARS = 1000
DETAILS_TOP_COMMENTS = 5
DETAILS_FETCH_LIMIT = 10

# Retry Policies (seconds)
SEARCH_MAX_ATTEMPTS = 3
SEARCH_BACKOFF_BASE = 1.0
SEARCH_BACKOFF_MAX = 8.0
SEARCH_RATE_LIMIT_DELAY = 5.0
SEARCH_TIMEOUT = 10.0

EMBEDDING_MAX_ATTEMPTS = 4
EMBEDDING_BACKOFF_BASE = 3.0  # 3s, 6s, 12s
EMBEDDING_BACKOFF_MAX = 30.0
EMBEDDING_RATE_LIMIT_DELAY = 10.0
EMBEDDING_TIMEOUT = 10.0

CHAT_MAX_ATTEMPTS = 3
CHAT_BACKOFF_BASE = 2.0
CHAT_BACKOFF_MAX = 20.0
CHAT_RATE_LIMIT_DELAY = 10.0
CHAT_TIMEOUT = 12.0

# Embeddings
HF_API_URL = (
    "https://router.huggingface.co/hf-inference/models/BAAI/bge-small-en-v1.5"
)
EMBEDDING_MAX_CONCURRENT = 2  # HuggingFace free tier allowance
EMBEDDING_SNIPPET_CHARS = 200

# Similarity Bounds
SIMILARITY_MIN = -1.0
SIMILARITY_MAX = 1.0

# Adaptive Semantic Thresholds (by intent)
INTENT_HOW_TO = "how-to"
INTENT_STORY = "story"
INTENT_TREND = "trend"
INTENT_PROBLEM = "problem"
SEMANTIC_THRESHOLDS = {
    INTENT_HOW_TO: 0.74,
    INTENT_TREND: 0.70,
    INTENT_STORY: 0.68,
    INTENT_PROBLEM: 0.72,
}
SEMANTIC_THRESHOLD_DEFAULT = SEMANTIC_THRESHOLDS[INTENT_PROBLEM]

# Heuristic Ranking
HEURISTIC_DEFAULT_UPVOTE_RATIO = 0.5
HEURISTIC_COMMENT_WEIGHT = 2
HEURISTIC_CANDIDATE_CAP = 30  # Max posts sent to the relevance scorer

# LLM Configuration
GROQ_CHAT_URL = "https://api.groq.com/openai/v1/chat/completions"
LLM_MODEL = "llama-3.3-70b-versatile"
LLM_HTTP_USER_AGENT = "reddit-context-search/0.1"
LLM_EXPANSION_TEMPERATURE = 0.5
LLM_SCORING_TEMPERATURE = 0.3
LLM_MAX_EXPANDED_QUERIES = 3
LLM_REQUESTS_PER_WINDOW = 30  # Groq free tier: 30 requests per minute
LLM_REQUEST_WINDOW = 60.0

# Relevance Scoring
SCORING_BATCH_SIZE = 10
SCORING_FALLBACK_SCORE = 5.0
SCORING_MIN_RELEVANCE = 6.0
SCORING_SNIPPET_CHARS = 500
RELEVANCE_MIN = 0.0
RELEVANCE_MAX = 10.0

PROMPT_INJECTION_PATTERNS = (
    r"ignore previous instructions",
    r"you are now",
    r"system prompt",
    r"new instructions",
    r"disregard the",
    r"act as",
    r"\[INST\]",
    r"\[/INST\]",
    r"<<SYS>>",
    r"<</SYS>>",
)

# Cache
CACHE_KEY_MAX_LENGTH = 200
CACHE_SWEEP_INTERVAL = 300  # 5 minutes
CACHE_TTL_SEARCH_RESULTS = 1800  # 30 minutes
CACHE_TTL_QUERY_EXPANSION = 3600  # 1 hour
REMOTE_CACHE_TIMEOUT = 5.0

# Inbound Rate Limiting
RATE_LIMIT_MIN_INTERVAL = 2.0  # One allowed request per identity every 2s
RATE_LIMIT_MAX_IDENTITIES = 10000

# Query Validation
QUERY_MIN_LENGTH = 2
QUERY_MAX_LENGTH = 200

# Usage Predictor
USAGE_TICK_INTERVAL = 1.0
