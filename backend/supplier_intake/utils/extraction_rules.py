"""
Rule-based product extraction for supplier text messages.

Used when no language model is configured or when the model call fails.
Handles the English/French mix suppliers write in and the XOF price formats
("250 000 FCFA", "250.000 CFA").
"""
import re
from statistics import mean
from typing import List, Optional, Dict, Tuple
from supplier_intake.schemas.extraction import ProductCandidate, ExtractionMetadata, STRUCTURED_FIELDS

RULE_BASED_MODEL = "rule-based"
RULE_CONFIDENCE_CAP = 80.0

# Field confidence by how the value was obtained
MATCHED_CONFIDENCE = 80.0
INFERRED_CONFIDENCE = 50.0
DEFAULTED_CONFIDENCE = 30.0

_AMOUNT = r"(?P<amount>\d{1,3}(?:[ .,]\d{3})+|\d+(?:[.,]\d{1,2})?)"
_CURRENCY = r"(?P<currency>XOF|FCFA|CFA|EUR|USD|GBP|NGN|GHS|€|\$)"

PRICE_PATTERNS = [
    re.compile(rf"\b{_AMOUNT}\s*{_CURRENCY}", re.IGNORECASE),
    re.compile(rf"{_CURRENCY}\s*{_AMOUNT}\b", re.IGNORECASE),
    re.compile(rf"(?:price|prix|cost|coût|amount|montant)\s*:?\s*{_AMOUNT}\b", re.IGNORECASE),
]

CURRENCY_ALIASES = {
    "FCFA": "XOF",
    "CFA": "XOF",
    "€": "EUR",
    "$": "USD",
}

QUANTITY_PATTERNS = [
    re.compile(r"(?:qty|quantity|quantité|stock|available|disponible)\s*:?\s*(\d+)", re.IGNORECASE),
    re.compile(r"\b(\d+)\s*(?:pieces|pièces|pcs|units|unités|items)\b", re.IGNORECASE),
    re.compile(r"(?:^|\s)x\s?(\d+)\b", re.IGNORECASE),
]

KNOWN_BRANDS = [
    "Samsung", "Apple", "Huawei", "Xiaomi", "Oppo", "Vivo", "Tecno", "Infinix", "Itel",
    "Nokia", "LG", "Sony", "HP", "Dell", "Lenovo", "Acer", "Asus", "MSI", "Canon", "Nikon",
    "Panasonic", "Philips", "Bosch", "Whirlpool", "Haier", "TCL", "Hisense", "Midea", "JBL",
]
# Model names that imply a brand
BRAND_ALIASES = {
    "iphone": "Apple",
    "ipad": "Apple",
    "macbook": "Apple",
    "airpods": "Apple",
    "galaxy": "Samsung",
    "thinkpad": "Lenovo",
    "redmi": "Xiaomi",
}

BRAND_LABEL_PATTERN = re.compile(r"(?:brand|marque)\s*:?\s*([A-Za-z0-9]+)", re.IGNORECASE)
BRAND_PATTERN = re.compile(r"\b(" + "|".join(KNOWN_BRANDS) + r")\b", re.IGNORECASE)
BRAND_ALIAS_PATTERN = re.compile(r"\b(" + "|".join(BRAND_ALIASES) + r")", re.IGNORECASE)

CONDITIONS = {
    "like new": "like_new",
    "comme neuf": "like_new",
    "refurbished": "refurbished",
    "reconditionné": "refurbished",
    "new": "new",
    "nouveau": "new",
    "neuf": "new",
    "used": "used",
    "utilisé": "used",
    "occasion": "used",
}
CONDITION_PATTERN = re.compile(r"\b(" + "|".join(CONDITIONS) + r")\b", re.IGNORECASE)

GRADE_PATTERNS = [
    re.compile(r"(?:grade|qualité|quality)\s*:?\s*([ABCD])\b", re.IGNORECASE),
    re.compile(r"\b([ABCD])\s*grade\b", re.IGNORECASE),
]

RAM_PATTERNS = [
    re.compile(r"\b(\d+)\s*(?:GB|Go)\s*RAM\b", re.IGNORECASE),
    re.compile(r"\bRAM\s*:?\s*(\d+)\s*(?:GB|Go)\b", re.IGNORECASE),
]
STORAGE_PATTERN = re.compile(r"\b(\d+)\s*(GB|TB|Go|To)\b(?!\s*RAM)", re.IGNORECASE)
SCREEN_PATTERN = re.compile(r"\b(\d+(?:\.\d+)?)\s*(?:inch|inches|pouces|\")", re.IGNORECASE)

COLORS = {
    "black": "black", "noir": "black",
    "white": "white", "blanc": "white",
    "blue": "blue", "bleu": "blue",
    "red": "red", "rouge": "red",
    "silver": "silver", "argent": "silver",
    "gold": "gold",
    "gray": "gray", "grey": "gray", "gris": "gray",
    "green": "green", "vert": "green",
}
COLOR_PATTERN = re.compile(r"\b(" + "|".join(COLORS) + r")\b", re.IGNORECASE)

CATEGORY_KEYWORDS = {
    "smartphones": ["iphone", "galaxy", "redmi", "smartphone", "phone", "téléphone", "mobile"],
    "laptops": ["laptop", "notebook", "macbook", "thinkpad", "ordinateur", "pavilion", "inspiron", "ideapad"],
    "tablets": ["ipad", "tablet", "tablette", "galaxy tab"],
    "televisions": ["tv", "television", "télévision", "smart tv", "oled", "qled"],
    "audio": ["headphones", "earphones", "speaker", "airpods", "écouteurs", "soundbar"],
    "gaming": ["playstation", "ps4", "ps5", "xbox", "nintendo", "console"],
    "appliances": ["refrigerator", "réfrigérateur", "washing machine", "microwave", "freezer", "blender", "climatiseur"],
    "cameras": ["camera", "caméra", "dslr", "gopro", "lens"],
}

# Lines that carry attributes, not a product name
NAME_SKIP_PATTERNS = [
    re.compile(r"^(?:price|prix|cost|coût|qty|quantity|quantité|condition|état|brand|marque|grade|stock)\b", re.IGNORECASE),
    re.compile(r"^\d+(?:[ .,]\d{3})*\s*(?:XOF|FCFA|CFA|EUR|USD)", re.IGNORECASE),
    re.compile(r"^(?:available|disponible|contact|call|whatsapp|tel|bonjour|hello|hi)\b", re.IGNORECASE),
]
PRODUCT_START_PATTERNS = [
    re.compile(r"^\d+[.)]\s"),  # Numbered list
    re.compile(r"^[-•*]\s"),  # Bullet point
]


def parse_amount(raw: str) -> Optional[float]:
    """
    Parse a price string, treating space/dot/comma groups of three digits as
    thousands separators and a trailing one- or two-digit group as decimals.
    """
    raw = raw.strip()
    if re.fullmatch(r"\d{1,3}(?:[ .,]\d{3})+", raw):
        return float(re.sub(r"[ .,]", "", raw))
    try:
        return float(raw.replace(",", "."))
    except ValueError:
        return None


def normalize_currency(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    raw = raw.strip().upper()
    return CURRENCY_ALIASES.get(raw, raw)


def extract_price(text: str) -> Tuple[Optional[float], Optional[str]]:
    """Returns (price, currency); currency is None when it was not stated next to the price"""
    for pattern in PRICE_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        amount = parse_amount(match.group("amount"))
        if amount is None:
            continue
        currency = match.groupdict().get("currency")
        return amount, normalize_currency(currency)
    return None, None


def extract_quantity(text: str) -> Optional[int]:
    for pattern in QUANTITY_PATTERNS:
        match = pattern.search(text)
        if match:
            return int(match.group(1))
    return None


def extract_brand(text: str) -> Optional[str]:
    match = BRAND_LABEL_PATTERN.search(text)
    if match:
        return match.group(1)
    match = BRAND_PATTERN.search(text)
    if match:
        found = match.group(1).lower()
        for brand in KNOWN_BRANDS:
            if brand.lower() == found:
                return brand
    match = BRAND_ALIAS_PATTERN.search(text)
    if match:
        return BRAND_ALIASES[match.group(1).lower()]
    return None


def extract_condition(text: str) -> Optional[str]:
    match = CONDITION_PATTERN.search(text)
    if match:
        return CONDITIONS[match.group(1).lower()]
    return None


def extract_grade(text: str) -> Optional[str]:
    for pattern in GRADE_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).upper()
    return None


def extract_specifications(text: str) -> Dict[str, str]:
    specs = {}
    for pattern in RAM_PATTERNS:
        match = pattern.search(text)
        if match:
            specs["ram"] = f"{int(match.group(1))}GB"
            break

    match = STORAGE_PATTERN.search(text)
    if match:
        unit = match.group(2).upper().replace("GO", "GB").replace("TO", "TB")
        specs["storage"] = f"{int(match.group(1))}{unit}"

    match = SCREEN_PATTERN.search(text)
    if match:
        specs["screen_size"] = f'{match.group(1)}"'

    match = COLOR_PATTERN.search(text)
    if match:
        specs["color"] = COLORS[match.group(1).lower()]

    return specs


def infer_category(text: str) -> Optional[str]:
    lowered = text.lower()
    for category, keywords in CATEGORY_KEYWORDS.items():
        for keyword in keywords:
            if re.search(rf"\b{re.escape(keyword)}\b", lowered):
                return category
    return None


def extract_name(lines: List[str]) -> Tuple[Optional[str], bool]:
    """
    Pick the most likely product name.

    Returns:
        (name, strong) where strong means the line carried a brand or model
    """
    fallback = None
    for line in lines:
        cleaned = clean_name(line)
        if not cleaned or any(p.search(cleaned) for p in NAME_SKIP_PATTERNS):
            continue
        if BRAND_PATTERN.search(cleaned) or BRAND_ALIAS_PATTERN.search(cleaned):
            return cleaned, True
        if fallback is None and 3 < len(cleaned) < 100:
            fallback = cleaned
    return fallback, False


def clean_name(line: str) -> str:
    name = re.sub(r"^(?:\d+[.)]|[-•*])\s*", "", line.strip())
    # Drop the trailing price part, e.g. "iPhone 13 - 250 000 FCFA"
    name = re.split(r"\s+[-–|:]\s+|\s*:\s*(?=\d)", name)[0]
    for pattern in PRICE_PATTERNS[:2]:
        name = pattern.sub("", name)
    return re.sub(r"\s+", " ", name).strip(" ,;-")


def split_sections(text: str) -> List[List[str]]:
    """Split a message into one block of lines per product"""
    lines = [line.strip() for line in re.split(r"[\n;]", text)]
    lines = [line for line in lines if len(line) > 2]

    sections: List[List[str]] = []
    current: List[str] = []
    for line in lines:
        starts_product = any(p.match(line) for p in PRODUCT_START_PATTERNS)
        if starts_product and current:
            sections.append(current)
            current = []
        current.append(line)
    if current:
        sections.append(current)
    return sections


def score_fields(field_confidences: Dict[str, float], condition: Optional[str], cap: float = 100.0) -> float:
    """
    Product confidence as the mean of its field confidences.
    Grade only counts for used and refurbished goods.
    """
    applicable = [
        field for field in STRUCTURED_FIELDS
        if field != "grade" or condition in ("used", "refurbished", "like_new")
    ]
    score = mean(field_confidences.get(field, 0.0) for field in applicable)
    return round(min(score, cap), 2)


def extract_product(lines: List[str], default_currency: str) -> Optional[ProductCandidate]:
    text = " ".join(lines)
    name, strong_name = extract_name(lines)
    price, currency = extract_price(text)
    brand = extract_brand(text)
    condition = extract_condition(text)
    grade = extract_grade(text)
    quantity = extract_quantity(text)
    category = infer_category(name or text)
    specifications = extract_specifications(text)

    found = {
        "name": name is not None,
        "brand": brand is not None,
        "condition": condition is not None,
        "grade": grade is not None,
        "price": price is not None,
    }
    # Not enough to call it a product
    if not name and sum(found.values()) < 2:
        return None

    field_confidences = {
        field: (MATCHED_CONFIDENCE if hit else 0.0) for field, hit in found.items()
    }
    if name and not strong_name:
        field_confidences["name"] = INFERRED_CONFIDENCE
    field_confidences["category"] = INFERRED_CONFIDENCE if category else 0.0
    field_confidences["currency"] = MATCHED_CONFIDENCE if currency else DEFAULTED_CONFIDENCE
    field_confidences["quantity"] = MATCHED_CONFIDENCE if quantity is not None else DEFAULTED_CONFIDENCE

    extracted_fields = [field for field, hit in found.items() if hit]
    if category:
        extracted_fields.append("category")
    if currency:
        extracted_fields.append("currency")
    if quantity is not None:
        extracted_fields.append("quantity")
    if specifications:
        extracted_fields.append("specifications")

    return ProductCandidate(
        name=name or "Unknown Product",
        brand=brand,
        category=category or "general",
        condition=condition,
        grade=grade,
        price=price,
        currency=currency or default_currency,
        quantity=quantity if quantity is not None else 1,
        specifications=specifications,
        confidence_score=score_fields(field_confidences, condition, cap=RULE_CONFIDENCE_CAP),
        field_confidences=field_confidences,
        extraction_metadata=ExtractionMetadata(
            ai_model=RULE_BASED_MODEL,
            extracted_fields=extracted_fields,
            source_type="text",
        ),
    )


def extract_products_from_text(text: str, default_currency: str = "XOF") -> List[ProductCandidate]:
    """
    Extract every product found in a free-text supplier message.

    Returns:
        Candidates in message order; empty when nothing product-like is found
    """
    if not text or not text.strip():
        return []

    products = []
    for section in split_sections(text):
        product = extract_product(section, default_currency)
        if product:
            products.append(product)
    return products
