from __future__ import annotations

import json

import pytest

from conftest import DAY, FakeSession, rule_body, set_age
from contentblocker import pipeline
from contentblocker.config import Source
from contentblocker.errors import NoRules, NotFound, RequestFailed
from contentblocker.pipeline import FilterListLoader, ListResult, collect, settle
from contentblocker.registry import CompiledRuleList, RuleListRegistry, RuleListStore, normalize_identifier


def make_loader(sources, cache, registry, session):
    return FilterListLoader(sources, cache, registry, session_factory=lambda: session)


def names(rule_lists):
    return [rule_list.identifier for rule_list in rule_lists]


def expected_names(sources):
    return [normalize_identifier(s.identifier) for s in sources]


def test_settle_and_collect_preserve_order():
    a = CompiledRuleList("a", (), 0)
    b = CompiledRuleList("b", (), 0)
    results = settle(["a", "b"], [a, b])
    assert results == [ListResult("a", a), ListResult("b", b)]
    assert collect(results) == [a, b]


def test_collect_any_failure_is_not_found():
    a = CompiledRuleList("a", (), 0)
    error = ValueError("bad")
    results = settle(["a", "b"], [a, error])
    assert results[1].error is error
    assert not results[1].success
    with pytest.raises(NotFound, match="b"):
        collect(results)


def test_settle_keeps_error_kind():
    results = settle(["a", "b"], [NoRules(), RequestFailed("HTTP 503")])
    assert isinstance(results[0].error, NoRules)
    assert isinstance(results[1].error, RequestFailed)
    assert str(results[1].error) == "HTTP 503"


def test_duplicate_identifiers_rejected(sources, cache, registry, session):
    with pytest.raises(ValueError):
        make_loader(sources + [sources[0]], cache, registry, session)


def test_identifiers_colliding_as_store_keys_rejected(cache, registry, session):
    colliding = [
        Source("A B", "https://lists.example/a.txt"),
        Source("A-B", "https://lists.example/b.txt"),
    ]
    with pytest.raises(ValueError, match="'A-B'"):
        make_loader(colliding, cache, registry, session)


@pytest.mark.asyncio
async def test_no_cache_full_refresh(sources, cache, registry, session):
    """5 sources, no cache directory: everything fetched, cached and compiled."""
    loader = make_loader(sources, cache, registry, session)

    rule_lists = await loader.get_lists()

    assert names(rule_lists) == expected_names(sources)
    assert sorted(session.calls) == sorted(s.url for s in sources)
    for source in sources:
        cached = json.loads(cache.path_for(source.identifier).read_text(encoding="utf-8"))
        assert cached[0]["action"]["type"] == "block"
    assert cache.check_freshness(sources) is not None


@pytest.mark.asyncio
async def test_fresh_cache_compiles_without_network(sources, warm_cache, registry, store, session):
    """5 fresh cache files and an empty store: compiled from disk, no fetch."""
    loader = make_loader(sources, warm_cache, registry, session)

    rule_lists = await loader.get_lists()

    assert names(rule_lists) == expected_names(sources)
    assert session.calls == []
    assert session.opened == 0
    assert store.identifiers() == sorted(expected_names(sources))
    assert rule_lists[2].rules[0].url_filter.pattern == "ads2"


@pytest.mark.asyncio
async def test_one_stale_file_refreshes_everything(sources, warm_cache, registry, session):
    """One cache file 8 days old: the whole set is downloaded again."""
    set_age(warm_cache.path_for(sources[1].identifier), 8 * DAY)
    loader = make_loader(sources, warm_cache, registry, session)

    rule_lists = await loader.get_lists()

    assert names(rule_lists) == expected_names(sources)
    assert len(session.calls) == len(sources)


@pytest.mark.asyncio
async def test_comment_only_list_fails_forced_refresh(sources, cache, registry, session):
    """A list of only ! lines settles as NoRules and the forced run fails."""
    session.routes[sources[2].url] = "! Title: empty\n! nothing here\n"
    loader = make_loader(sources, cache, registry, session)

    with pytest.raises(NotFound, match=sources[2].identifier):
        await loader.get_lists(force_refresh=True)
    # Other lists still ran to completion
    assert len(session.calls) == len(sources)


@pytest.mark.asyncio
async def test_cache_failure_falls_back_to_network(sources, warm_cache, registry, session):
    """A corrupt cached file fails the cache path; one refresh succeeds."""
    corrupt = warm_cache.path_for(sources[4].identifier)
    corrupt.write_text('[{"trigger": {"url-fil', encoding="utf-8")
    set_age(corrupt, DAY)
    loader = make_loader(sources, warm_cache, registry, session)

    rule_lists = await loader.get_lists()

    assert names(rule_lists) == expected_names(sources)
    assert len(session.calls) == len(sources)
    json.loads(corrupt.read_text(encoding="utf-8"))


@pytest.mark.asyncio
async def test_fallback_happens_once(sources, warm_cache, registry, session):
    """Cache path fails, then the refresh fails: NotFound, no second refresh."""
    warm_cache.path_for(sources[0].identifier).write_text("{broken", encoding="utf-8")
    session.routes[sources[3].url] = 500
    loader = make_loader(sources, warm_cache, registry, session)

    with pytest.raises(NotFound):
        await loader.get_lists()

    assert session.opened == 1
    assert len(session.calls) == len(sources)


class FlakyStore(RuleListStore):
    """Fails the first compile (and every lookup) of one key."""

    def __init__(self, failing_key):
        super().__init__()
        self.failing_key = failing_key
        self.compile_attempts = 0

    async def lookup(self, identifier):
        if identifier == self.failing_key:
            raise RuntimeError("lookup unavailable")
        return await super().lookup(identifier)

    async def compile(self, identifier, encoded):
        if identifier == self.failing_key:
            self.compile_attempts += 1
            if self.compile_attempts == 1:
                raise RuntimeError("compile refused")
        return await super().compile(identifier, encoded)


@pytest.mark.asyncio
async def test_store_compile_failure_on_cache_path_recovers(sources, warm_cache, session):
    """The store refuses one cached list once; the forced refresh compiles it."""
    store = FlakyStore(normalize_identifier(sources[1].identifier))
    loader = make_loader(sources, warm_cache, RuleListRegistry(store), session)

    rule_lists = await loader.get_lists()

    assert names(rule_lists) == expected_names(sources)
    assert store.compile_attempts == 2
    assert session.opened == 1
    assert len(session.calls) == len(sources)
    assert rule_lists[1].rules[0].url_filter.pattern != "ads1"


@pytest.mark.asyncio
async def test_store_lookup_failure_is_a_miss(sources, warm_cache, session):
    """A failing lookup falls through to the cached file without a download."""
    store = FlakyStore(normalize_identifier(sources[3].identifier))
    store.compile_attempts = 1
    loader = make_loader(sources, warm_cache, RuleListRegistry(store), session)

    rule_lists = await loader.get_lists()

    assert names(rule_lists) == expected_names(sources)
    assert rule_lists[3].rules[0].url_filter.pattern == "ads3"
    assert session.calls == []


@pytest.mark.asyncio
async def test_partial_cache_listing_refreshes(sources, warm_cache, registry, session, monkeypatch):
    """A freshness result that does not cover every source is not used."""
    partial = warm_cache.check_freshness(sources)[:-1]
    monkeypatch.setattr(warm_cache, "check_freshness", lambda _sources: partial)
    loader = make_loader(sources, warm_cache, registry, session)

    rule_lists = await loader.get_lists()

    assert names(rule_lists) == expected_names(sources)
    assert len(session.calls) == len(sources)


@pytest.mark.asyncio
async def test_missing_store_fails(sources, cache, session):
    loader = make_loader(sources, cache, RuleListRegistry(None), session)
    with pytest.raises(NotFound):
        await loader.get_lists()


@pytest.mark.asyncio
async def test_results_follow_source_order(sources, cache, registry, session):
    # First source answers last
    session.delays = {s.url: 0.01 * (len(sources) - i) for i, s in enumerate(sources)}
    loader = make_loader(sources, cache, registry, session)

    rule_lists = await loader.get_lists(force_refresh=True)

    assert names(rule_lists) == expected_names(sources)
    assert session.calls == [s.url for s in sources]


@pytest.mark.asyncio
async def test_rerun_within_retention_does_not_fetch(sources, cache, registry, session):
    loader = make_loader(sources, cache, registry, session)

    first = await loader.get_lists()
    second = await loader.get_lists()

    assert len(session.calls) == len(sources)
    assert [a is b for a, b in zip(first, second)] == [True] * len(sources)


@pytest.mark.asyncio
async def test_force_refresh_ignores_fresh_cache(sources, warm_cache, registry, session):
    loader = make_loader(sources, warm_cache, registry, session)

    await loader.get_lists(force_refresh=True)

    assert len(session.calls) == len(sources)


@pytest.mark.asyncio
async def test_cache_write_failure_does_not_fail_run(sources, tmp_path, registry, session):
    blocker = tmp_path / "file"
    blocker.write_text("", encoding="utf-8")
    loader = make_loader(sources, pipeline.CacheStore(blocker / "cache"), registry, session)

    rule_lists = await loader.get_lists()

    assert names(rule_lists) == expected_names(sources)


def test_main_runs_pipeline(tmp_path, monkeypatch, capsys):
    sources_file = tmp_path / "sources.txt"
    sources_file.write_text(
        "# lists\nFirst list | https://lists.example/1.txt\nSecond list | https://lists.example/2.txt\n",
        encoding="utf-8",
    )
    session = FakeSession({
        "https://lists.example/1.txt": rule_body(1),
        "https://lists.example/2.txt": rule_body(2),
    })
    monkeypatch.setattr(pipeline, "create_session", lambda concurrency: session)

    code = pipeline.main(["--sources", str(sources_file), "--cache", str(tmp_path / "cache")])

    assert code == 0
    assert "First list" in capsys.readouterr().out
    assert (tmp_path / "cache" / "Second list.json").exists()


def test_main_reports_failure(tmp_path, monkeypatch):
    sources_file = tmp_path / "sources.txt"
    sources_file.write_text("Only list | https://lists.example/1.txt\n", encoding="utf-8")
    monkeypatch.setattr(pipeline, "create_session", lambda concurrency: FakeSession({}))

    assert pipeline.main(["--sources", str(sources_file), "--cache", str(tmp_path / "cache")]) == 1


def test_main_bad_sources_file(tmp_path):
    assert pipeline.main(["--sources", str(tmp_path / "missing.txt")]) == 2

    bad = tmp_path / "bad.txt"
    bad.write_text("no separator here\n", encoding="utf-8")
    assert pipeline.main(["--sources", str(bad)]) == 2
