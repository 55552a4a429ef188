"""Second-stage rerankers.

- `heuristic`: keyword overlap + file-role rules (always on, dependency-free).
- `relevance`: optional fusion with an external relevance judge. Heavy/networked
  dependencies are only touched when a judge is instantiated and used.
"""
