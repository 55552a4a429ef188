"""Code snippet retrieval over a pre-embedded corpus (ANN recall -> reranking).

Entry point for library use is `coderag.pipeline.RetrievalPipeline`. Heavy or
networked dependencies (hnswlib, sentence-transformers, HTTP judges) are only
touched when the corresponding backend is used.
"""
