from typing import Dict, List, Tuple
import re


# category -> [(pattern, severity)]
INPUT_PATTERNS: Dict[str, List[Tuple[re.Pattern, str]]] = {
    "prompt_injection": [
        (re.compile(r"ignore\s+(all\s+)?(previous|prior|above)\s+(instructions?|prompts?|rules)", re.I), "high"),
        (re.compile(r"forget\s+(everything|all\s+(your|previous)\s+instructions)", re.I), "high"),
        (re.compile(r"you\s+are\s+now\s+(a|an|in|the)\b", re.I), "high"),
        (re.compile(r"(reveal|show|print|repeat)\s+(me\s+)?(your|the)\s+(system\s+)?(prompt|instructions)", re.I), "high"),
        (re.compile(r"\b(admin|root|developer|god)\s+(access|mode|privileges?)\b", re.I), "high"),
        (re.compile(r"pretend\s+to\s+be|act\s+as\s+if\s+you", re.I), "medium"),
        (re.compile(r"\[/?INST\]|<\|im_(start|end)\|>|###\s*(system|instruction)", re.I), "high"),
        (re.compile(r"\brole\s*:\s*system\b|^\s*system\s*:", re.I | re.M), "high"),
        (re.compile(r"\bjailbreak\b|\bDAN\s+mode\b", re.I), "high"),
    ],
    "sql_injection": [
        (re.compile(r"\b(drop|truncate|alter)\s+(table|database)\b", re.I), "critical"),
        (re.compile(r"\bunion\s+(all\s+)?select\b", re.I), "critical"),
        (re.compile(r"\b(select|delete)\b.+\bfrom\b\s+\w+\s*(;|--|where\s+1\s*=\s*1)", re.I), "high"),
        (re.compile(r"\binsert\s+into\b\s+\w+", re.I), "high"),
        (re.compile(r"('|\")\s*(or|and)\s*('|\")?\s*\d*\s*('|\")?\s*=", re.I), "high"),
        (re.compile(r";\s*--|--\s*$|/\*.*\*/", re.I), "medium"),
        (re.compile(r"\bxp_cmdshell\b|\bexec\s*\(", re.I), "critical"),
    ],
    "price_manipulation": [
        (re.compile(r"(set|change|make)\s+(the\s+)?price\s+to\s+\$?0\b", re.I), "high"),
        (re.compile(r"\bprice\s*=\s*0\b", re.I), "high"),
        (re.compile(r"\boverride\s+(the\s+)?price\b", re.I), "high"),
        (re.compile(r"\b(apply|give\s+me)\s+(a\s+)?100\s*%\s*(off|discount)", re.I), "high"),
        (re.compile(r"\bdiscount\s*=\s*100\b|\bunlimited\s+discount\b|\bbypass\s+discount\s+limit\b", re.I), "high"),
        (re.compile(r"\bgenerate\s+(a\s+)?coupon\b|\bhack\b.*\bprice\b|\bexploit\b.*\bdiscount\b", re.I), "medium"),
    ],
    "data_exfiltration": [
        (re.compile(r"\b(show|list|dump|export|give)\s+(me\s+)?all\s+(the\s+)?(customers?|users?|orders|passwords|credit\s+cards)\b", re.I), "high"),
        (re.compile(r"\b(dump|export)\s+(the\s+)?(customers?|users?|passwords|credit\s+cards)\b", re.I), "high"),
        (re.compile(r"\bother\s+(customers?|users?)('s?)?\s+(orders?|data|addresses|details)\b", re.I), "high"),
        (re.compile(r"\bexport\s+(the\s+)?database\b|\bdump\s+(table|data|users?)\b", re.I), "high"),
        (re.compile(r"\binternal\s+api\b|\badmin\s+panel\b|\benvironment\s+variables?\b|\bconfiguration\s+file\b", re.I), "medium"),
        (re.compile(r"\bapi[\s_-]?keys?\b|\bcredentials?\b", re.I), "medium"),
    ],
}

SENSITIVE_OUTPUT_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\b(?:\d[ -]?){13,16}\b"), "card_number"),
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "ssn"),
    (re.compile(r"\b(sk|pk|rk)_(live|test)_[A-Za-z0-9]{8,}\b"), "api_key"),
    (re.compile(r"\bapi[_-]?key\s*[:=]\s*\S+", re.I), "api_key"),
    (re.compile(r"\bpassword\s*[:=]\s*\S+", re.I), "password"),
]

# Internal markers that must never reach the user
LEAK_PATTERNS: List[re.Pattern] = [
    re.compile(r"\[SYSTEM\].*?\[/SYSTEM\]", re.S),
    re.compile(r"###\s*System:.*?###", re.S),
    re.compile(r"<!--.*?-->", re.S),
]
INTERNAL_MARKERS: List[re.Pattern] = [
    re.compile(r"internal\s+use\s+only", re.I),
    re.compile(r"\bconfidential\b", re.I),
    re.compile(r"do\s+not\s+share", re.I),
    re.compile(r"api[_-]?endpoint", re.I),
]
ZERO_PRICE = re.compile(r"\$0\.0+\b")

QUANTITY_MENTION = re.compile(
    r"\b(\d{1,3}(?:,\d{3})+|\d+)\s*(?:x\s*)?(units?|pieces?|pcs|items?|boxes?|cases?|pallets?|packs?|seats?)\b",
    re.I,
)
NEGATIVE_PRICE = re.compile(r"-\s*\$\s*\d|\$\s*-\s*\d")
DISCOUNT_PERCENT = re.compile(r"\b(\d{1,3})\s*%\s*(off|discount)", re.I)


def quantities_in(text: str) -> List[int]:
    """Unit quantities mentioned in free text"""
    return [int(match.group(1).replace(",", "")) for match in QUANTITY_MENTION.finditer(text)]
