"""Default word lists used by keyword extraction and the surprise heuristics.

These are tunable: MemoryConfig carries its own copies, seeded from here.
"""

STOP_WORDS = frozenset(
    {
        "a", "about", "above", "after", "again", "all", "also", "an", "and", "any",
        "are", "as", "at", "be", "been", "before", "being", "below", "between", "both",
        "but", "by", "can", "could", "did", "do", "does", "doing", "down", "during",
        "each", "few", "for", "from", "further", "had", "has", "have", "having", "he",
        "her", "here", "hers", "him", "his", "how", "i", "if", "in", "into", "is",
        "it", "its", "itself", "just", "may", "might", "more", "most", "must", "my",
        "no", "nor", "not", "now", "of", "off", "on", "once", "only", "or", "other",
        "our", "ours", "out", "over", "own", "same", "she", "should", "so", "some",
        "such", "than", "that", "the", "their", "theirs", "them", "then", "there",
        "these", "they", "this", "those", "through", "to", "too", "under", "until",
        "up", "very", "was", "we", "were", "what", "when", "where", "which", "while",
        "who", "whom", "why", "will", "with", "would", "you", "your", "yours",
    }
)

# Pairs of words whose co-occurrence across two memories suggests a contradiction.
ANTONYM_PAIRS = (
    ("like", "dislike"),
    ("love", "hate"),
    ("prefer", "avoid"),
    ("always", "never"),
    ("enable", "disable"),
    ("enabled", "disabled"),
    ("true", "false"),
    ("dark", "light"),
    ("tabs", "spaces"),
    ("sync", "async"),
    ("synchronous", "asynchronous"),
    ("allow", "deny"),
    ("accept", "reject"),
    ("include", "exclude"),
    ("start", "stop"),
    ("add", "remove"),
    ("increase", "decrease"),
    ("public", "private"),
    ("frontend", "backend"),
    ("mutable", "immutable"),
    ("static", "dynamic"),
    ("local", "remote"),
)

EMPHASIS_KEYWORDS = (
    "important",
    "critical",
    "crucial",
    "essential",
    "must",
    "need to",
    "remember",
    "note that",
    "pay attention",
    "make sure",
    "always",
    "never",
    "actually",
    "don't forget",
)

PREFERENCE_VERBS = frozenset(
    {
        "prefer", "prefers", "preferred", "like", "likes", "liked", "love", "loves",
        "hate", "hates", "dislike", "dislikes", "use", "uses", "used", "using",
        "want", "wants", "choose", "chooses", "chose", "favorite", "favourite",
        "avoid", "avoids",
    }
)

SYNONYMS = {
    "database": ["db", "sql", "sqlite", "postgres", "postgresql", "storage"],
    "db": ["database"],
    "authentication": ["auth", "login", "jwt", "oauth"],
    "auth": ["authentication", "authorization", "login"],
    "login": ["authentication", "auth", "signin"],
    "config": ["configuration", "settings"],
    "configuration": ["config", "settings"],
    "settings": ["config", "configuration", "preferences"],
    "test": ["testing", "tests", "spec"],
    "error": ["exception", "failure", "bug"],
    "bug": ["error", "issue", "defect"],
    "function": ["method", "procedure"],
    "framework": ["library"],
    "library": ["package", "framework", "module"],
    "prefer": ["like", "favorite", "want"],
    "preference": ["prefer", "like", "favorite"],
    "deploy": ["deployment", "release", "ship"],
    "server": ["backend", "service"],
    "javascript": ["js", "node", "typescript"],
    "typescript": ["ts", "javascript"],
    "python": ["py"],
}
