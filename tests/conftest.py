import os

os.environ['DATABASE_URL'] = 'sqlite://'
os.environ.setdefault('SECRET_KEY', 'test-secret-key')

import pytest

import app as pageant
from app import db, User, Event, Show, Phase, Criteria, Contestant, Judge, ContestantPhase


class Factory:
    def user(self, username='judge1', role='judge', password='secret'):
        user = User(username=username, role=role)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user

    def event(self, name='Miss Test'):
        event = Event(name=name)
        db.session.add(event)
        db.session.commit()
        return event

    def show(self, event, name='Interview', weight=100, order=None, reset_scores=False):
        if order is None:
            order = len(Phase.query.filter_by(event_id=event.id).all()) + 1
        show = Show(event_id=event.id, name=name, weight=weight, order=order)
        show.phase = Phase(event_id=event.id, name=name, order=order, reset_scores=reset_scores)
        db.session.add(show)
        db.session.commit()
        return show

    def criteria(self, show, name='Poise', weight=100, max_score=10):
        criterion = Criteria(show_id=show.id, name=name, weight=weight, max_score=max_score, order=len(show.criteria) + 1)
        db.session.add(criterion)
        db.session.commit()
        return criterion

    def contestant(self, event, number, name=None):
        contestant = Contestant(event_id=event.id, number=number, name=name or f'Contestant {number}')
        db.session.add(contestant)
        db.session.commit()
        return contestant

    def judge(self, event, user=None):
        if user is None:
            user = self.user(username=f'judge-{event.id}-{len(event.judges) + 1}')
        judge = Judge(event_id=event.id, user_id=user.id)
        db.session.add(judge)
        db.session.commit()
        return judge

    def enroll(self, contestant, phase, status='active'):
        row = ContestantPhase(contestant_id=contestant.id, phase_id=phase.id, status=status)
        db.session.add(row)
        db.session.commit()
        return row


@pytest.fixture
def flask_app():
    pageant.app.config['TESTING'] = True
    with pageant.app.app_context():
        db.create_all()
        yield pageant.app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture
def factory(flask_app):
    return Factory()


@pytest.fixture
def admin(factory):
    return factory.user(username='admin', role='admin', password='adminpass')


@pytest.fixture
def admin_client(client, admin):
    response = client.post('/api/login', json={'username': 'admin', 'password': 'adminpass'})
    assert response.status_code == 200
    return client


@pytest.fixture
def single_show_event(factory):
    """One event, one show/phase with one criterion, two contestants in the first phase, one judge."""
    event = factory.event()
    show = factory.show(event, name='Preliminaries')
    criterion = factory.criteria(show, name='Overall', weight=100, max_score=10)
    c1 = factory.contestant(event, 1)
    c2 = factory.contestant(event, 2)
    pageant.seed_first_phase(event.id)
    judge = factory.judge(event)
    return {
        'event': event,
        'show': show,
        'phase': show.phase,
        'criteria': criterion,
        'contestants': [c1, c2],
        'judge': judge
    }


@pytest.fixture
def two_phase_event(factory):
    event = factory.event()
    prelim = factory.show(event, name='Preliminaries', order=1)
    final = factory.show(event, name='Finals', order=2, reset_scores=True)
    prelim_criteria = factory.criteria(prelim, name='Overall')
    final_criteria = factory.criteria(final, name='Final Q&A')
    contestants = [factory.contestant(event, number) for number in (1, 2, 3)]
    pageant.seed_first_phase(event.id)
    return {
        'event': event,
        'phases': [prelim.phase, final.phase],
        'criteria': [prelim_criteria, final_criteria],
        'contestants': contestants
    }
