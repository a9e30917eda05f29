"""Game domain services: rule engine, store, authorization and orchestration.

This package holds the domain logic that socket handlers and HTTP routes call
into, keeping transport concerns separated from session bookkeeping.
"""
from types import SimpleNamespace

from arena.services.authz import AuthorizationGate, SignedTokenVerifier
from arena.services.engine import RuleEngineAdapter
from arena.services.orchestrator import SessionOrchestrator
from arena.services.store import SessionStore


def build_services(app):
    cfg = app.config
    store = SessionStore(code_length=int(cfg.get('GAME_CODE_LENGTH', 6)))
    engine = RuleEngineAdapter()
    verifier = SignedTokenVerifier(
        secret_key=cfg['SECRET_KEY'],
        store=store,
        max_age=int(cfg.get('TOKEN_MAX_AGE_SEC', 3600)),
    )
    return SimpleNamespace(
        store=store,
        engine=engine,
        verifier=verifier,
        gate=AuthorizationGate(verifier),
        orchestrator=SessionOrchestrator(store, engine),
    )
