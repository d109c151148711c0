import pytest

from release_converger.executor import Executor
from release_converger.models import DesiredState
from release_converger.prober import StateProber
from release_converger.reconciler import Reconciler
from release_converger.retry import RetryPolicy
from release_converger.services.metrics import RunMetrics
from release_converger.verifier import PostActionVerifier
from tests.fakes import FakeCluster, make_spec

PASSWORD = "s3cret-master"


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def spec():
    return make_spec()


@pytest.fixture
def retry():
    return RetryPolicy(max_attempts=3, backoff=0, max_backoff=0)


@pytest.fixture
def desired(spec):
    return DesiredState(target_secret_values={key: PASSWORD for key in spec.credential_keys})


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def prober(cluster, retry):
    return StateProber(cluster, cluster, retry)


@pytest.fixture
def executor(cluster, retry, sleeps):
    return Executor(cluster, cluster, retry, converge_timeout=600,
                    deletion_timeout=20, poll_interval=5, sleep=sleeps.append)


@pytest.fixture
def verifier(prober, cluster, sleeps):
    return PostActionVerifier(prober, cluster, settle_seconds=5, sleep=sleeps.append)


@pytest.fixture
def reconciler(prober, executor, verifier):
    return Reconciler(prober, executor, verifier, metrics=RunMetrics())
