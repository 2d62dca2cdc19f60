"""kbsmith: LLM-assisted concept notes for a Markdown knowledge base.

Concepts are defined, tagged, written and fact-checked by language models
through a per-note task queue, embedded for semantic duplicate detection,
and merged with snapshots taken before every destructive write.
"""

__version__ = "0.1.0"
