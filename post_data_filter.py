#!/usr/bin/env python3
"""
Post-data filter hook for the MTA.

Runs after the message body was received and before the MTA accepts it:

    greylist -> spamc -> rspamd -> antivirus -> dkim

Each stage wraps an optional external tool; a tool that is not installed just
means the stage is skipped. The first stage that rejects stops the pipeline.

Contract with the MTA:
- input: session facts in the environment (AUTH_AS, SPF_PASS, REMOTE_ADDR,
  MAIL_FROM), the message on stdin
- exit 0: accept, stdout holds header lines to add to the message
- exit 20: permanent rejection, stdout holds the reason
- exit 75 (or any other): temporary rejection, stdout holds the reason

Author: Post-Data Filter Project
License: GPL-3.0
"""

import datetime
import json
import logging
import os
import signal
import sys
import syslog
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import psutil
from dotenv import load_dotenv

from filter_modules.antivirus_scanner import AntivirusStage, ClamdSocketScanner
from filter_modules.context import Context, StageResult, Verdict
from filter_modules.dkim_signer import DkimSignStage
from filter_modules.greylist_check import GreylistStage
from filter_modules.header_utils import format_header_block
from filter_modules.message_buffer import MessageBuffer
from filter_modules.rspamd_filter import RspamdStage
from filter_modules.spam_filter import SpamcStage
from filter_modules.stage import FilterStage
from filter_modules.tool_invoker import ExternalTool, ToolInvocationError

# Load environment variables from .env file
load_dotenv(os.getenv('POSTDATA_ENV_FILE', '/etc/post-data-filter/.env'))

logger = logging.getLogger('post_data_filter')

STAGE_ORDER = ('greylist', 'spamc', 'rspamd', 'antivirus', 'dkim')
TEMPFAIL_REASON = 'temporary failure while filtering, please try again'

# ============================================================================
# CONFIGURATION MANAGEMENT
# ============================================================================

def _env_bool(environ, key: str, default: bool = False) -> bool:
    value = environ.get(key)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class FilterConfig:
    """Centralized configuration management"""

    def __init__(self, environ=None, config_file: Optional[str] = None):
        if environ is None:
            environ = os.environ

        self.config = {
            "timeouts": {
                "total_processing": int(environ.get('POSTDATA_TIMEOUT_TOTAL', 300)),
                "greylist": int(environ.get('POSTDATA_TIMEOUT_GREYLIST', 10)),
                "spamc": int(environ.get('POSTDATA_TIMEOUT_SPAMC', 60)),
                "rspamd": int(environ.get('POSTDATA_TIMEOUT_RSPAMD', 60)),
                "antivirus": int(environ.get('POSTDATA_TIMEOUT_ANTIVIRUS', 120)),
                "dkim": int(environ.get('POSTDATA_TIMEOUT_DKIM', 30)),
            },

            # Command names, looked up in PATH
            "tools": {
                "greylist": environ.get('POSTDATA_GREYLIST_CMD', 'greylist'),
                "spamc": environ.get('POSTDATA_SPAMC_CMD', 'spamc'),
                "rspamd_adapter": environ.get('POSTDATA_RSPAMD_ADAPTER_CMD', 'chasquid-rspamd'),
                "rspamc": environ.get('POSTDATA_RSPAMC_CMD', 'rspamc'),
                "clamdscan": environ.get('POSTDATA_CLAMDSCAN_CMD', 'clamdscan'),
                "dkimsign": environ.get('POSTDATA_DKIMSIGN_CMD', 'dkimsign'),
            },

            "greylist": {
                # Empty group name disables the group membership check
                "required_group": environ.get('POSTDATA_GREYLIST_GROUP', 'greylist'),
            },

            "spam": {
                "max_message_size": int(environ.get('POSTDATA_SPAMC_MAX_SIZE', 0)),
            },

            "antivirus": {
                "clamd_socket": environ.get('POSTDATA_CLAMD_SOCKET', '/var/run/clamav/clamd.ctl'),
                "clamd_host": environ.get('POSTDATA_CLAMD_HOST', 'localhost'),
                "clamd_port": int(environ.get('POSTDATA_CLAMD_PORT', 3310)),
                "use_socket": _env_bool(environ, 'POSTDATA_CLAMD_USE_SOCKET', True),
                "max_file_size_mb": int(environ.get('POSTDATA_CLAMD_MAX_SIZE_MB', 50)),
            },

            "dkim": {
                "config_dir": environ.get('POSTDATA_CONFIG_DIR', '.'),
                "domains_dir": environ.get('POSTDATA_DKIM_DOMAINS_DIR', 'domains'),
                "certs_dir": environ.get('POSTDATA_DKIM_CERTS_DIR', 'certs'),
                "use_library": _env_bool(environ, 'POSTDATA_DKIM_LIBRARY', False),
            },

            "stages": {
                "disabled": [s.strip() for s in environ.get('POSTDATA_DISABLED_STAGES', '').split(',') if s.strip()],
            },

            "logging": {
                "level": environ.get('POSTDATA_LOG_LEVEL', 'INFO').upper(),
            },

            "tmp_dir": environ.get('POSTDATA_TMP_DIR') or None,
        }

        if config_file is None:
            config_file = environ.get('POSTDATA_CONFIG_FILE', '/etc/post-data-filter/filter_config.json')
        self._load_config_file(config_file)

    def _load_config_file(self, config_file: str):
        """Merge overrides from the JSON config file, if there is one"""
        if not config_file or not os.path.exists(config_file):
            logger.debug(f"No filter config found at {config_file}, using defaults")
            return

        try:
            with open(config_file, 'r') as f:
                overrides = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Error loading filter config {config_file}: {e}, using defaults")
            return

        if not isinstance(overrides, dict):
            logger.warning(f"Filter config {config_file} is not a JSON object, ignored")
            return

        for section, values in overrides.items():
            if section.startswith('_comment'):
                continue
            current = self.config.get(section)
            if isinstance(current, dict) and isinstance(values, dict):
                current.update(values)
            else:
                self.config[section] = values
        logger.debug(f"Loaded filter config overrides from {config_file}")

    def timeout(self, stage: str) -> int:
        return int(self.config['timeouts'].get(stage, 60))

    def tool(self, key: str) -> str:
        return self.config['tools'][key]

    def is_disabled(self, stage: str) -> bool:
        return stage in self.config['stages']['disabled']

# ============================================================================
# SAFE LOGGING FUNCTIONS
# ============================================================================

def setup_logging(level: str = 'INFO'):
    # stdout belongs to the MTA, all diagnostics go to stderr
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr)


def safe_log(message: str, priority: int = syslog.LOG_INFO, max_length: int = 500):
    """Log to syslog (mail facility) with a length limit, errors are echoed to stderr"""
    if len(message) > max_length:
        message = message[:max_length-3] + "..."

    try:
        syslog.openlog(ident="post_data_filter", facility=syslog.LOG_MAIL)
        syslog.syslog(priority, message)
        syslog.closelog()
    except OSError:
        pass

    if priority <= syslog.LOG_ERR:
        print(f"[{datetime.datetime.now().strftime('%H:%M:%S')}] {message}", file=sys.stderr)

# ============================================================================
# TIMEOUT HANDLER
# ============================================================================

class TimeoutException(Exception):
    """Custom exception for timeout handling"""
    pass


@contextmanager
def timeout_handler(seconds: int):
    """Context manager raising TimeoutException once `seconds` elapsed"""
    if not seconds or seconds <= 0:
        yield
        return

    def timeout_occurred(signum, frame):
        raise TimeoutException(f"Processing timed out after {seconds} seconds")

    old_handler = signal.signal(signal.SIGALRM, timeout_occurred)
    signal.alarm(seconds)

    try:
        yield
    finally:
        signal.alarm(0)
        signal.signal(signal.SIGALRM, old_handler)

# ============================================================================
# PERFORMANCE MONITORING
# ============================================================================

class PerformanceMonitor:
    """Track per-stage timings and memory for the log"""

    def __init__(self):
        self.metrics = {
            'start_time': datetime.datetime.now(),
            'stage_times': {},
            'memory_usage': {},
            'email_size': 0,
            'headers_added': 0,
            'stages_run': [],
            'stages_skipped': [],
            'verdict': None,
        }
        self.record_memory('start')

    def record_memory(self, phase: str):
        """Record memory usage"""
        try:
            process = psutil.Process()
            self.metrics['memory_usage'][phase] = process.memory_info().rss / 1024 / 1024  # MB
        except psutil.Error:
            pass

    def record_email_size(self, size: int):
        self.metrics['email_size'] = size

    def record_stage(self, stage: str, elapsed: float, result: StageResult):
        self.metrics['stage_times'][stage] = elapsed
        if result.skipped:
            self.metrics['stages_skipped'].append(stage)
        else:
            self.metrics['stages_run'].append(stage)
            self.metrics['headers_added'] += len(result.header_lines)

    def record_verdict(self, verdict: Verdict):
        self.metrics['verdict'] = verdict

    def log_performance(self, log_func):
        """Log performance summary"""
        end_time = datetime.datetime.now()
        total_time = (end_time - self.metrics['start_time']).total_seconds()

        self.record_memory('end')

        stage_times = ', '.join(f"{name}={elapsed:.2f}s" for name, elapsed in self.metrics['stage_times'].items())
        log_func(f"Performance: {total_time:.2f}s total, {self.metrics['email_size']} bytes")
        log_func(f"Stages run: {', '.join(self.metrics['stages_run']) or 'none'} ({stage_times or 'no timings'})")
        log_func(f"Headers added: {self.metrics['headers_added']}")

        mem_start = self.metrics['memory_usage'].get('start', 0)
        mem_end = self.metrics['memory_usage'].get('end', 0)
        log_func(f"Memory: {mem_start:.1f}MB -> {mem_end:.1f}MB")

# ============================================================================
# PIPELINE
# ============================================================================

@dataclass
class PipelineResult:
    """
    Final outcome for one message.

    Attributes:
        verdict: Terminal verdict
        header_lines: Headers from every stage that ran and accepted, in order
        reason: Reject reason (empty on accept)
        rejected_by: Name of the stage that rejected, if any
    """
    verdict: Verdict = Verdict.ACCEPT
    header_lines: List[str] = field(default_factory=list)
    reason: str = ''
    rejected_by: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return self.verdict.exit_code

    def output(self) -> str:
        """What to print on stdout for the MTA"""
        if self.verdict is Verdict.ACCEPT:
            return format_header_block(self.header_lines)
        return f"{self.reason}\n" if self.reason else ''


def build_stages(config: FilterConfig) -> List[FilterStage]:
    """Create the stages in their fixed order, leaving out disabled ones"""
    av_config = config.config['antivirus']
    dkim_config = config.config['dkim']

    socket_scanner = None
    if av_config['use_socket']:
        socket_scanner = ClamdSocketScanner(
            clamd_socket=av_config['clamd_socket'],
            host=av_config['clamd_host'],
            port=av_config['clamd_port'],
            timeout=config.timeout('antivirus'),
            max_file_size=av_config['max_file_size_mb'] * 1024 * 1024)

    stages = {
        'greylist': GreylistStage(
            ExternalTool(config.tool('greylist'), config.timeout('greylist')),
            required_group=config.config['greylist']['required_group']),
        'spamc': SpamcStage(
            ExternalTool(config.tool('spamc'), config.timeout('spamc')),
            max_size=config.config['spam']['max_message_size']),
        'rspamd': RspamdStage(
            ExternalTool(config.tool('rspamd_adapter'), config.timeout('rspamd')),
            ExternalTool(config.tool('rspamc'), config.timeout('rspamd'))),
        'antivirus': AntivirusStage(
            ExternalTool(config.tool('clamdscan'), config.timeout('antivirus')),
            socket_scanner),
        'dkim': DkimSignStage(
            ExternalTool(config.tool('dkimsign'), config.timeout('dkim')),
            config_dir=dkim_config['config_dir'],
            domains_dir=dkim_config['domains_dir'],
            certs_dir=dkim_config['certs_dir'],
            use_library=dkim_config['use_library']),
    }

    return [stages[name] for name in STAGE_ORDER if not config.is_disabled(name)]


def run_stage(stage: FilterStage, context: Context, buffer: MessageBuffer) -> StageResult:
    """Run one stage, turning tool faults and crashes into a temporary reject"""
    try:
        if not stage.is_available():
            logger.debug(f"Stage {stage.name} not available, skipped")
            return StageResult.skip("not available")
        return stage.run(context, buffer)
    except ToolInvocationError as e:
        logger.warning(f"Stage {stage.name} failed: {e}")
        return StageResult.reject_temporary(TEMPFAIL_REASON)
    except Exception as e:
        logger.error(f"Stage {stage.name} crashed: {e}", exc_info=True)
        return StageResult.reject_temporary(TEMPFAIL_REASON)


def run_pipeline(context: Context, buffer: MessageBuffer, stages: Sequence[FilterStage],
                 monitor: PerformanceMonitor = None) -> PipelineResult:
    """Run the stages in order and stop at the first reject"""
    outcome = PipelineResult()

    for stage in stages:
        start = time.monotonic()
        result = run_stage(stage, context, buffer)
        if monitor:
            monitor.record_stage(stage.name, time.monotonic() - start, result)

        if result.skipped:
            if result.reason:
                logger.debug(f"Stage {stage.name} skipped: {result.reason}")
            continue

        if result.verdict.is_reject:
            outcome.verdict = result.verdict
            outcome.reason = result.reason
            outcome.rejected_by = stage.name
            # headers collected so far are dropped by the MTA with the message
            break

        outcome.header_lines.extend(result.header_lines)

    if monitor:
        monitor.record_verdict(outcome.verdict)
    return outcome

# ============================================================================
# ENTRY POINT
# ============================================================================

def process_message(context: Context, stream, config: FilterConfig,
                    stages: Optional[Sequence[FilterStage]] = None,
                    monitor: PerformanceMonitor = None) -> PipelineResult:
    """Buffer the message from `stream` and filter it"""
    if stages is None:
        stages = build_stages(config)

    with MessageBuffer(tmp_dir=config.config['tmp_dir']) as buffer:
        size = buffer.fill_from(stream)
        if monitor:
            monitor.record_email_size(size)
        return run_pipeline(context, buffer, stages, monitor)


def main() -> int:
    """Filter the message on stdin, print the result and return the exit code"""
    monitor = None

    try:
        config = FilterConfig()
        setup_logging(config.config['logging']['level'])
        monitor = PerformanceMonitor()

        context = Context.from_environ()
        safe_log(f"Filtering message from <{context.envelope_sender}> "
                 f"ip={context.remote_ip} auth={context.authenticated_identity or '-'} "
                 f"spf={'pass' if context.spf_passed else 'fail'}")

        with timeout_handler(config.timeout('total_processing')):
            outcome = process_message(context, sys.stdin.buffer, config, monitor=monitor)
    except TimeoutException as e:
        safe_log(f"TIMEOUT: {e}", syslog.LOG_ERR)
        outcome = PipelineResult(Verdict.REJECT_TEMPORARY, reason=TEMPFAIL_REASON)
    except Exception as e:
        safe_log(f"ERROR: unexpected failure: {e}", syslog.LOG_ERR)
        logger.error("Unexpected failure while filtering", exc_info=True)
        outcome = PipelineResult(Verdict.REJECT_TEMPORARY, reason=TEMPFAIL_REASON)

    if outcome.verdict is Verdict.ACCEPT:
        safe_log(f"Accepted with {len(outcome.header_lines)} header(s)")
    else:
        safe_log(f"Rejected ({outcome.verdict.value}) by {outcome.rejected_by or 'filter'}: {outcome.reason}",
                 syslog.LOG_NOTICE)
    if monitor:
        monitor.log_performance(logger.debug)

    sys.stdout.write(outcome.output())
    sys.stdout.flush()
    return outcome.exit_code


if __name__ == "__main__":
    sys.exit(main())
