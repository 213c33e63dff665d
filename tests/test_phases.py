import logging

import pytest
from flask.logging import default_handler
from sqlalchemy import text

import app as pageant
from app import db, Event, Phase, Score, ContestantPhase, Contestant


def active_phases(event_id):
    return Phase.query.filter_by(event_id=event_id, status='active').all()


def statuses(event_id):
    return [phase.status for phase in pageant.get_event_phases(event_id)]


def test_first_advance_starts_the_lowest_pending_phase(two_phase_event):
    event = two_phase_event['event']
    prelim, _ = two_phase_event['phases']

    outcome = pageant.advance_phase(event.id)

    assert outcome['previous_phase'] is None
    assert outcome['new_phase'].id == prelim.id
    assert statuses(event.id) == ['active', 'pending']
    event = db.session.get(Event, event.id)
    assert event.status == 'active'
    assert event.current_phase == 'Preliminaries'


def test_advancing_walks_every_phase_with_one_active_at_a_time(two_phase_event):
    event = two_phase_event['event']

    pageant.advance_phase(event.id)
    assert len(active_phases(event.id)) == 1
    pageant.advance_phase(event.id)
    assert len(active_phases(event.id)) == 1
    assert statuses(event.id) == ['completed', 'active']

    outcome = pageant.advance_phase(event.id)
    assert outcome['new_phase'] is None
    assert outcome['message'] == 'Event completed - no more phases'
    assert active_phases(event.id) == []
    assert statuses(event.id) == ['completed', 'completed']
    assert db.session.get(Event, event.id).status == 'completed'


def test_advancing_clears_stale_scores_of_a_reset_phase(two_phase_event, factory):
    event = two_phase_event['event']
    prelim, final = two_phase_event['phases']
    _, final_criteria = two_phase_event['criteria']
    judge = factory.judge(event)
    pageant.advance_phase(event.id)
    for contestant in two_phase_event['contestants']:
        db.session.add(Score(
            event_id=event.id,
            contestant_id=contestant.id,
            judge_id=judge.id,
            show_id=final_criteria.show_id,
            criteria_id=final_criteria.id,
            phase_id=final.id,
            score=5
        ))
    db.session.commit()
    assert Score.query.filter_by(phase_id=final.id).count() == 3

    outcome = pageant.advance_phase(event.id)

    assert outcome['scores_cleared'] == 3
    assert db.session.get(Phase, prelim.id).status == 'completed'
    assert db.session.get(Phase, final.id).status == 'active'
    assert Score.query.filter_by(phase_id=final.id).count() == 0
    assert db.session.get(Event, event.id).current_phase == 'Finals'


def test_phase_without_reset_keeps_its_scores(factory):
    event = factory.event()
    first = factory.show(event, name='Round 1', order=1)
    second = factory.show(event, name='Round 2', order=2, reset_scores=False)
    criterion = factory.criteria(second)
    contestant = factory.contestant(event, 1)
    judge = factory.judge(event)
    pageant.advance_phase(event.id)
    db.session.add(Score(
        event_id=event.id,
        contestant_id=contestant.id,
        judge_id=judge.id,
        show_id=second.id,
        criteria_id=criterion.id,
        phase_id=second.phase.id,
        score=4
    ))
    db.session.commit()

    outcome = pageant.advance_phase(event.id)

    assert outcome['scores_cleared'] == 0
    assert Score.query.filter_by(phase_id=second.phase.id).count() == 1
    assert db.session.get(Phase, first.phase.id).status == 'completed'


def test_event_without_phases_cannot_advance(factory):
    event = factory.event()
    with pytest.raises(pageant.PreconditionError):
        pageant.advance_phase(event.id)


def test_unknown_event_cannot_advance(flask_app):
    with pytest.raises(pageant.NotFoundError):
        pageant.advance_phase(404)


def test_completed_event_has_nothing_left_to_start(factory):
    event = factory.event()
    factory.show(event)
    pageant.advance_phase(event.id)
    pageant.advance_phase(event.id)

    with pytest.raises(pageant.PreconditionError):
        pageant.advance_phase(event.id)


def test_two_active_phases_are_reported_and_left_alone(two_phase_event):
    event = two_phase_event['event']
    db.session.execute(text('DROP INDEX uq_phase_single_active'))
    for phase in Phase.query.filter_by(event_id=event.id).all():
        phase.status = 'active'
    db.session.commit()

    with pytest.raises(pageant.ConsistencyFailure):
        pageant.advance_phase(event.id)

    assert len(active_phases(event.id)) == 2


def test_reorder_swaps_pending_phases_and_their_shows(factory):
    event = factory.event()
    a = factory.show(event, name='A', order=1)
    b = factory.show(event, name='B', order=2)

    phases = pageant.reorder_phases(event.id, [
        {'id': a.phase.id, 'order': 2},
        {'id': b.phase.id, 'order': 1},
    ])

    assert [phase.name for phase in phases] == ['B', 'A']
    assert db.session.get(type(a), a.id).order == 2
    assert db.session.get(type(b), b.id).order == 1


def test_reorder_rejects_pending_phase_before_active_one(two_phase_event):
    event = two_phase_event['event']
    prelim, final = two_phase_event['phases']
    pageant.advance_phase(event.id)

    with pytest.raises(pageant.PreconditionError):
        pageant.reorder_phases(event.id, [
            {'id': prelim.id, 'order': 2},
            {'id': final.id, 'order': 1},
        ])

    assert [phase.name for phase in pageant.get_event_phases(event.id)] == ['Preliminaries', 'Finals']


def test_reorder_rejects_colliding_orders(two_phase_event):
    prelim, _ = two_phase_event['phases']
    with pytest.raises(pageant.ValidationError):
        pageant.reorder_phases(two_phase_event['event'].id, [{'id': prelim.id, 'order': 2}])


def test_reorder_rejects_foreign_phase(two_phase_event, factory):
    other = factory.event(name='Other')
    other_show = factory.show(other)
    with pytest.raises(pageant.ValidationError):
        pageant.reorder_phases(two_phase_event['event'].id, [{'id': other_show.phase.id, 'order': 5}])


def test_restart_returns_everything_to_the_first_phase(two_phase_event):
    event = two_phase_event['event']
    prelim, final = two_phase_event['phases']
    contestants = two_phase_event['contestants']
    pageant.advance_phase(event.id)
    pageant.advance_contestants(event.id, [contestants[0].id])
    pageant.advance_phase(event.id)

    outcome = pageant.restart_event(event.id)

    assert outcome['seeded_count'] == 3
    assert statuses(event.id) == ['pending', 'pending']
    event = db.session.get(Event, event.id)
    assert event.status == 'upcoming'
    assert event.current_phase is None
    assert ContestantPhase.query.filter_by(phase_id=final.id).count() == 0
    rows = ContestantPhase.query.filter_by(phase_id=prelim.id).all()
    assert sorted(row.status for row in rows) == ['active', 'active', 'active']
    assert {contestant.status for contestant in Contestant.query.all()} == {'active'}


def test_restart_can_clear_scores(single_show_event):
    event = single_show_event['event']
    phase = single_show_event['phase']
    c1, _ = single_show_event['contestants']
    pageant.advance_phase(event.id)
    pageant.submit_score(c1.id, single_show_event['judge'].id, single_show_event['criteria'].id, phase.id, 7)

    outcome = pageant.restart_event(event.id, clear_scores=True)

    assert outcome['scores_cleared'] == 1
    assert Score.query.count() == 0


def test_phase_transitions_reach_the_process_log(two_phase_event, caplog):
    assert default_handler in pageant.logger.handlers

    with caplog.at_level(logging.INFO, logger='pageant'):
        pageant.advance_phase(two_phase_event['event'].id)

    assert 'phase advance: None -> Preliminaries' in caplog.text
