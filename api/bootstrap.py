"""
Service wiring — builds the object graph the HTTP app runs on.

Everything is constructed explicitly from Settings so tests can build an
isolated graph around their own store and clock.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fastapi import Request

from backend.connector import ApiCallExecutor
from channels.telephony.twilio_client import TwilioClient
from config.settings import Settings, get_settings
from database.store_base import BaseIvrStore
from database.store_factory import create_configured_store
from engine.dispatcher import NodeDispatcher
from engine.runner import CallFlowEngine
from engine.state_manager import ExecutionStateManager, StaleExecutionSweeper
from notifications.leads import LeadCapture
from notifications.post_call import PostCallDispatcher
from workflow.audio_jobs import AudioJobQueue, Renderer
from workflow.service import WorkflowService


@dataclass
class Services:
    settings: Settings
    store: BaseIvrStore
    manager: ExecutionStateManager
    engine: CallFlowEngine
    workflows: WorkflowService
    audio_jobs: AudioJobQueue
    sweeper: StaleExecutionSweeper
    post_call: PostCallDispatcher
    api_executor: ApiCallExecutor
    twilio: Optional[TwilioClient] = None


def build_services(
    settings: Settings = None,
    store: BaseIvrStore = None,
    renderer: Renderer = None,
    clock: Callable[[], datetime] = None,
) -> Services:
    settings = settings or get_settings()
    store = store or create_configured_store(settings)
    twilio = TwilioClient.from_config(settings.telephony)

    manager = ExecutionStateManager(
        store, lead_capture=LeadCapture(store), config=settings.engine, clock=clock,
    )
    api_executor = ApiCallExecutor(settings.engine)
    dispatcher = NodeDispatcher(api_executor, settings.telephony, settings.engine)
    post_call = PostCallDispatcher(
        store, sms_client=twilio, config=settings.notifications,
        timeout_s=settings.engine.side_effect_timeout_s,
    )
    engine = CallFlowEngine(store, manager, dispatcher, post_call=post_call, config=settings.engine)
    audio_jobs = AudioJobQueue(store, renderer=renderer)

    return Services(
        settings=settings,
        store=store,
        manager=manager,
        engine=engine,
        workflows=WorkflowService(store, audio_jobs),
        audio_jobs=audio_jobs,
        sweeper=StaleExecutionSweeper(manager, settings.engine.sweep_interval_s),
        post_call=post_call,
        api_executor=api_executor,
        twilio=twilio,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
