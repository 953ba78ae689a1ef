import threading

import pytest

from filedrop import registry as registry_module
from filedrop.errors import (
    NotFoundError, ExpiredError, FileMissingError, CodeExhaustedError
)
from filedrop.models import (
    AccessToken, AccessCode, AccessLink, File, KIND_CODE, KIND_LINK
)

from conftest import CODE_TTL, LINK_TTL


def count(session_factory, model) -> int:
    with session_factory() as s:
        return s.query(model).count()


class TestValidate:
    def test_code_resolves_to_its_file(self, registry, upload):
        rec, code = upload()
        grant = registry.validate(code.code)
        assert grant.file.id == rec.id
        assert grant.kind == KIND_CODE
        assert grant.consume_on_read

    def test_single_use_comes_from_the_variant(self, registry, upload):
        assert AccessCode.consume_on_read is True
        assert AccessLink.consume_on_read is False

        rec, code = upload()
        link = registry.mint_link(rec.id)
        assert registry.validate(code.code).consume_on_read is True
        assert registry.validate(link.code).consume_on_read is False

    def test_unknown_token(self, registry):
        with pytest.raises(NotFoundError):
            registry.validate("000000")
        with pytest.raises(NotFoundError):
            registry.validate("")

    def test_validate_does_not_consume(self, registry, upload):
        _, code = upload()
        registry.validate(code.code)
        registry.validate(code.code)

    def test_code_valid_until_ttl(self, registry, upload, clock):
        _, code = upload()
        clock.advance(CODE_TTL - 1)
        registry.validate(code.code)
        clock.advance(1)
        registry.validate(code.code)

    def test_code_expires_after_ttl(self, registry, upload, clock, session_factory):
        _, code = upload()
        clock.advance(CODE_TTL + 1)
        with pytest.raises(ExpiredError):
            registry.validate(code.code)
        # purged eagerly
        with pytest.raises(NotFoundError):
            registry.validate(code.code)
        assert count(session_factory, AccessToken) == 0

    def test_link_expiry_boundary(self, registry, upload, clock):
        rec, _ = upload()
        link = registry.mint_link(rec.id)
        clock.advance(LINK_TTL - 1)
        assert registry.validate(link.code).kind == KIND_LINK
        clock.advance(2)
        with pytest.raises(ExpiredError):
            registry.validate(link.code)

    def test_expiry_purges_other_expired_tokens(self, registry, upload, clock, session_factory):
        _, first = upload()
        _, second = upload()
        clock.advance(CODE_TTL + 1)
        _, fresh = upload()

        with pytest.raises(ExpiredError):
            registry.validate(first.code)

        codes = {t.code for t in _all_tokens(session_factory)}
        assert codes == {fresh.code}
        assert second.code not in codes

    def test_missing_blob_is_internal_fault(self, registry, upload, blob_store):
        rec, code = upload()
        blob_store.delete(rec.id)
        with pytest.raises(FileMissingError) as exc:
            registry.validate(code.code)
        assert exc.value.file_id == rec.id


def _all_tokens(session_factory):
    with session_factory() as s:
        return s.query(AccessToken).all()


class TestConsume:
    def test_code_is_single_use(self, registry, upload):
        _, code = upload()
        grant = registry.validate(code.code)
        registry.consume(code.code, grant.kind)
        with pytest.raises(NotFoundError):
            registry.validate(code.code)

    def test_second_consume_loses(self, registry, upload):
        _, code = upload()
        registry.consume(code.code, KIND_CODE)
        with pytest.raises(NotFoundError):
            registry.consume(code.code, KIND_CODE)

    def test_consume_expired_code(self, registry, upload, clock, session_factory):
        _, code = upload()
        clock.advance(CODE_TTL + 1)
        with pytest.raises(ExpiredError):
            registry.consume(code.code, KIND_CODE)
        assert count(session_factory, AccessToken) == 0
        with pytest.raises(NotFoundError):
            registry.consume(code.code, KIND_CODE)

    def test_consume_at_ttl_succeeds(self, registry, upload, clock):
        _, code = upload()
        clock.advance(CODE_TTL)
        registry.consume(code.code, KIND_CODE)
        with pytest.raises(NotFoundError):
            registry.validate(code.code)

    def test_link_is_reusable(self, registry, upload):
        rec, _ = upload()
        link = registry.mint_link(rec.id)
        for _ in range(5):
            grant = registry.redeem(link.code)
            registry.consume(link.code, grant.kind)
            assert grant.file.id == rec.id
            assert not grant.consume_on_read

    def test_redeem_code_twice(self, registry, upload):
        _, code = upload()
        registry.redeem(code.code)
        with pytest.raises(NotFoundError):
            registry.redeem(code.code)

    def test_redeem_expired_code(self, registry, upload, clock):
        _, code = upload()
        clock.advance(CODE_TTL + 1)
        with pytest.raises(ExpiredError):
            registry.redeem(code.code)

    def test_concurrent_redeem_has_one_winner(self, registry, upload):
        _, code = upload()
        workers = 8
        barrier = threading.Barrier(workers)
        results = []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                registry.redeem(code.code)
                outcome = "ok"
            except (NotFoundError, ExpiredError) as e:
                outcome = type(e).__name__
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("ok") == 1
        assert results.count("NotFoundError") == workers - 1


class TestMintLink:
    def test_unknown_file(self, registry):
        with pytest.raises(NotFoundError):
            registry.mint_link("does-not-exist")

    def test_link_outlives_consumed_code(self, registry, upload):
        rec, code = upload()
        registry.redeem(code.code)
        link = registry.mint_link(rec.id)
        assert registry.validate(link.code).file.id == rec.id
        assert [t.kind for t in registry.tokens_for(rec.id)] == [KIND_LINK]

    def test_links_are_independent(self, registry, upload, clock):
        rec, _ = upload()
        old = registry.mint_link(rec.id)
        clock.advance(LINK_TTL // 2)
        new = registry.mint_link(rec.id)
        clock.advance(LINK_TTL // 2 + 1)
        with pytest.raises(ExpiredError):
            registry.validate(old.code)
        registry.validate(new.code)


class TestIssueCode:
    def test_retries_on_collision(self, registry, upload, monkeypatch):
        codes = iter(["111111", "111111", "222222"])
        monkeypatch.setattr(registry_module, "make_code", lambda length: next(codes))

        _, first = upload()
        _, second = upload()
        assert first.code == "111111"
        assert second.code == "222222"

    def test_gives_up_after_budget(self, registry, upload, monkeypatch, session_factory, blob_store):
        monkeypatch.setattr(registry_module, "make_code", lambda length: "111111")
        upload()
        registry.code_max_attempts = 3

        with pytest.raises(CodeExhaustedError):
            upload()
        assert count(session_factory, File) == 1
        assert len(list(blob_store.entries())) == 1
