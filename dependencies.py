"""Shared FastAPI dependencies wiring components to the store."""

from fastapi import Depends

from admission import AdmissionController
from audit import AuditLog
from bypass import BypassEvaluator
from challenge import ChallengeEngine
from classifier import ThreatClassifier
from clock import Clock, now_ms
from config_manager import ConfigManager
from redis_client import redis_client
from store import AtomicStore

_store = AtomicStore(redis_client)
_classifier = ThreatClassifier()


def get_store() -> AtomicStore:
    return _store


def get_clock() -> Clock:
    return now_ms


def get_classifier() -> ThreatClassifier:
    return _classifier


def get_audit(store: AtomicStore = Depends(get_store)) -> AuditLog:
    return AuditLog(store)


def get_challenge_engine(
    store: AtomicStore = Depends(get_store),
    audit: AuditLog = Depends(get_audit),
    clock: Clock = Depends(get_clock),
) -> ChallengeEngine:
    return ChallengeEngine(store, audit=audit, clock=clock)


def get_config_manager(
    store: AtomicStore = Depends(get_store),
    audit: AuditLog = Depends(get_audit),
    clock: Clock = Depends(get_clock),
) -> ConfigManager:
    return ConfigManager(store, audit, clock=clock)


def get_bypass_evaluator(
    store: AtomicStore = Depends(get_store),
    challenges: ChallengeEngine = Depends(get_challenge_engine),
    audit: AuditLog = Depends(get_audit),
    clock: Clock = Depends(get_clock),
) -> BypassEvaluator:
    return BypassEvaluator(store, challenges, audit, clock=clock)


def get_admission_controller(
    store: AtomicStore = Depends(get_store),
    classifier: ThreatClassifier = Depends(get_classifier),
    challenges: ChallengeEngine = Depends(get_challenge_engine),
    audit: AuditLog = Depends(get_audit),
    config_manager: ConfigManager = Depends(get_config_manager),
    clock: Clock = Depends(get_clock),
) -> AdmissionController:
    return AdmissionController(
        store,
        classifier=classifier,
        challenges=challenges,
        audit=audit,
        config_manager=config_manager,
        clock=clock,
    )
