"""Query embedding, embedding cache and semantic reranking service"""
