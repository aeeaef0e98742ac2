"""
Text helpers: normalisation, fingerprints, keywords, polarity.

Everything here is pure and deterministic so that the same input always
yields the same fingerprint. Idempotent writes depend on that.
"""

import hashlib
import re
import unicodedata

STOPWORDS = {
    'the', 'a', 'an', 'is', 'are', 'was', 'were', 'be', 'been',
    'being', 'have', 'has', 'had', 'do', 'does', 'did', 'will',
    'would', 'could', 'should', 'may', 'might', 'must', 'shall',
    'can', 'need', 'ought', 'used', 'to', 'of', 'in',
    'for', 'on', 'with', 'at', 'by', 'from', 'as', 'into',
    'through', 'during', 'before', 'after', 'above', 'below',
    'between', 'under', 'again', 'further', 'then', 'once',
    'here', 'there', 'when', 'where', 'why', 'how', 'all',
    'each', 'few', 'more', 'most', 'other', 'some', 'such',
    'no', 'nor', 'not', 'only', 'own', 'same', 'so', 'than',
    'too', 'very', 'just', 'and', 'but', 'if', 'or', 'because',
    'until', 'while', 'what', 'which', 'who', 'this', 'that',
    'these', 'those', 'am', 'it', 'its', 'i', 'me', 'my', 'we',
    'our', 'you', 'your', 'he', 'him', 'his', 'she', 'her',
    'they', 'them', 'their', 'really', 'also', 'about', 'get',
    'got', 'im', 'ive', 'cannot', 'never', 'always',
}

NEGATIONS = {"not", "no", "never", "cannot", "without", "nobody", "nothing", "neither"}

# Opinion words carry polarity, not topic
SENTIMENT_WORDS = {
    "like", "likes", "love", "loves", "enjoy", "enjoys", "prefer", "prefers",
    "hate", "hates", "dislike", "dislikes", "avoid", "avoids", "want", "wants",
    "reject", "rejects", "adore", "detest", "can", "cannot", "always", "never",
    "increase", "decrease", "gain", "lose", "more", "less",
}

# (positive, negative) pairs; either order across two texts is an opposition
ANTONYM_PAIRS = [
    ("love", "hate"), ("like", "hate"), ("love", "dislike"), ("like", "dislike"),
    ("enjoy", "hate"), ("enjoy", "dislike"), ("adore", "detest"),
    ("prefer", "avoid"), ("want", "avoid"), ("prefer", "reject"),
    ("always", "never"), ("increase", "decrease"), ("gain", "lose"),
    ("more", "less"), ("can", "cannot"),
]

_CONTRACTIONS = [
    (re.compile(r"\bcan'?t\b"), "cannot"),
    (re.compile(r"\bwon'?t\b"), "will not"),
    (re.compile(r"n't\b"), " not"),
    (re.compile(r"'m\b"), " am"),
    (re.compile(r"'re\b"), " are"),
    (re.compile(r"'ve\b"), " have"),
]


def normalize_text(text: str) -> str:
    """Lowercase, expand negating contractions, strip punctuation, squeeze spaces."""
    if not text:
        return ""
    text = unicodedata.normalize("NFKC", str(text)).lower()
    text = text.replace("’", "'").replace("‘", "'")
    for pattern, replacement in _CONTRACTIONS:
        text = pattern.sub(replacement, text)
    text = re.sub(r"[^\w\s]", " ", text)
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def semantic_hash(text: str) -> str:
    """Fingerprint of the normalised text.

    Word order and negations are kept, so "I like tea" and
    "I do not like tea" never share a fingerprint.
    """
    normalized = normalize_text(text)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:32]


def tokenize(text: str) -> list[str]:
    normalized = normalize_text(text)
    return normalized.split() if normalized else []


def stem(word: str) -> str:
    """Very light suffix stripping, enough to match workout/workouts/working."""
    if len(word) > 5 and word.endswith("ing"):
        return word[:-3]
    if len(word) > 3 and word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def extract_keywords(text: str, limit: int = 8) -> list[str]:
    """Significant words in order of first appearance."""
    keywords = []
    for word in tokenize(text):
        if word in STOPWORDS or len(word) <= 2 or word.isdigit():
            continue
        if word not in keywords:
            keywords.append(word)
        if len(keywords) >= limit:
            break
    return keywords


def topic_tokens(text: str) -> set[str]:
    """Stemmed content words with opinion and negation words removed."""
    return {
        stem(w) for w in tokenize(text)
        if w not in STOPWORDS
        and w not in SENTIMENT_WORDS
        and w not in NEGATIONS
        and len(w) > 2
    }


def jaccard(a: set, b: set) -> float:
    union = a | b
    return len(a & b) / len(union) if union else 0.0


def overlap_coefficient(a: set, b: set) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / min(len(a), len(b))


def polarity_opposition(text_a: str, text_b: str) -> float:
    """How strongly two texts take opposite stances.

    1.0 when an antonym pair splits across them (love / hate),
    0.8 when one negates an opinion word the other asserts plainly,
    0.0 otherwise. Topic is not checked here.
    """
    words_a = set(tokenize(text_a))
    words_b = set(tokenize(text_b))
    stems_a = {stem(w) for w in words_a}
    stems_b = {stem(w) for w in words_b}

    for pos, neg in ANTONYM_PAIRS:
        pos, neg = stem(pos), stem(neg)
        a_pos, a_neg = pos in stems_a, neg in stems_a
        b_pos, b_neg = pos in stems_b, neg in stems_b
        if (a_pos and not a_neg and b_neg and not b_pos) or (a_neg and not a_pos and b_pos and not b_neg):
            return 1.0

    negated_a = bool(words_a & NEGATIONS)
    negated_b = bool(words_b & NEGATIONS)
    if negated_a != negated_b:
        shared_opinion = (stems_a & stems_b) & {stem(w) for w in SENTIMENT_WORDS}
        if shared_opinion:
            return 0.8

    return 0.0


def content_ratio(text: str) -> float:
    """Unique-word ratio; low values mean repetitive text."""
    words = tokenize(text)
    if not words:
        return 0.0
    return len(set(words)) / len(words)
