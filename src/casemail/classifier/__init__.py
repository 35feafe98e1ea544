"""Message classification.

Rule-based, multi-destination category matching over sender, recipient and
subject.
"""

from casemail.classifier.rules import ClassificationResult, classify

__all__ = [
    "ClassificationResult",
    "classify",
]
