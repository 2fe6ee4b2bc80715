"""Curation pipeline core for language-learning content.

This package coordinates the multi-stage curation pipeline that turns
source documents into approved learning content:
- Work leases for mutual exclusion between concurrent workers
- Item lifecycle state machine (draft, candidate, validated, approved)
- Quality gate evaluation with bounded attempts and deduplication
- Operator feedback and bounded, versioned regeneration retries
- Pipeline progress and status rollup
"""
