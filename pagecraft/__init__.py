# Pagecraft: iterative, validated and reversible natural-language page edits
__version__ = "1.0.0"
