"""
Reviewer hints attached to every queued product: what to do with it and
roughly how long the review will take.
"""
from typing import List

# Under this confidence the reviewer is asked to check name and category first
EDIT_SUGGESTION_BELOW = 70
EDIT_CONFIDENCE_FACTOR = 0.8


def suggest_actions(product) -> List[dict]:
    """Creating the product is always on the table; weak extractions also get an edit suggestion"""
    confidence = product.confidence_score or 0.0
    actions = [{
        "type": "create",
        "confidence": confidence,
        "reasoning": "Create new product based on extracted data",
        "suggested_edits": None,
    }]
    if confidence < EDIT_SUGGESTION_BELOW:
        actions.append({
            "type": "update",
            "confidence": round(confidence * EDIT_CONFIDENCE_FACTOR, 1),
            "reasoning": "Low confidence - review and edit extracted data",
            "suggested_edits": {"name": product.name, "category": product.category},
        })
    return actions


def estimate_review_minutes(product) -> int:
    minutes = 3
    confidence = product.confidence_score or 0.0
    if confidence < 50:
        minutes += 5
    elif confidence < 70:
        minutes += 2
    if len(product.specifications or {}) > 5:
        minutes += 2
    return minutes
