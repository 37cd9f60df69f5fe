from .rag_context import RagContext, apply_rag_context, build_rag_context

__all__ = ["RagContext", "apply_rag_context", "build_rag_context"]
