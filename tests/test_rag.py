import pytest

from asknotes.errors import RetrievalFailure
from asknotes.rag import Reranker, Retriever, tokenize

from conftest import BIO_CHUNKS, HIST_CHUNKS, FakeEmbedder, FakeIndex, make_chunk


def test_tokenize():
    assert tokenize("What's ATP, really?") == ["what", "s", "atp", "really"]


def test_search_is_scoped_to_subject():
    r = Retriever(FakeIndex(BIO_CHUNKS + HIST_CHUNKS), FakeEmbedder())
    res = r.search("bio", "mitochondria", top_k=8)
    assert [c.id for c in res] == ["bio-1", "bio-2", "bio-3"]
    assert all(c.metadata.subject_id == "bio" for c in res)


def test_search_drops_leaked_chunks():
    r = Retriever(FakeIndex(BIO_CHUNKS + HIST_CHUNKS, leak=True), FakeEmbedder())
    res = r.search("bio", "mitochondria", top_k=8)
    assert "hist-1" not in [c.id for c in res]


def test_search_respects_top_k():
    r = Retriever(FakeIndex(BIO_CHUNKS), FakeEmbedder())
    assert len(r.search("bio", "q", top_k=2)) == 2


def test_search_unknown_subject_is_empty():
    r = Retriever(FakeIndex(BIO_CHUNKS), FakeEmbedder())
    assert r.search("nope", "q", top_k=5) == []


def test_index_failure_is_retrieval_failure():
    class Broken:
        def query(self, vector, top_k, subject_id):
            raise OSError("index file is gone")

    with pytest.raises(RetrievalFailure):
        Retriever(Broken(), FakeEmbedder()).search("bio", "q", 3)


def test_rerank_truncates_and_keeps_chunks_untouched():
    out = Reranker().rerank("ATP mitochondria", BIO_CHUNKS, top_n=2)
    assert len(out) == 2
    for c in out:
        assert c in BIO_CHUNKS
    assert {c.score for c in out} <= {c.score for c in BIO_CHUNKS}


def test_rerank_ties_keep_retrieval_order():
    same = [make_chunk(f"c{i}", "identical text", 0.5) for i in range(4)]
    out = Reranker().rerank("identical", same, top_n=4)
    assert [c.id for c in out] == ["c0", "c1", "c2", "c3"]


def test_rerank_lexical_can_lift_a_chunk():
    chunks = [
        make_chunk("dense", "unrelated words only", 0.60),
        make_chunk("lexical", "photosynthesis photosynthesis chlorophyll", 0.55),
        make_chunk("filler-1", "cells divide by mitosis", 0.30),
        make_chunk("filler-2", "proteins fold in the cytoplasm", 0.30),
    ]
    out = Reranker(alpha=0.3).rerank("photosynthesis chlorophyll", chunks, top_n=2)
    assert [c.id for c in out] == ["lexical", "dense"]


def test_rerank_empty():
    assert Reranker().rerank("q", [], top_n=3) == []
