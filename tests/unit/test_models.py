"""
Unit tests for emergency and participant models
"""

from datetime import timedelta

from musterpoint.core.timestamps import utcnow
from musterpoint.models.emergency import (
    AttendeeNotification, Emergency, EmergencyStatus, GeoPoint, Resolution,
    VolunteerResponse, VolunteerStatus
)
from musterpoint.models.user import MemberLocation, UserRole


class TestEmergencyStatus:

    def test_terminal_statuses(self):
        assert {s for s in EmergencyStatus if s.is_terminal} == {EmergencyStatus.RESOLVED, EmergencyStatus.FAKE}

    def test_fake_hidden_from_volunteers(self):
        assert not EmergencyStatus.FAKE.visible_to_volunteers
        assert EmergencyStatus.RESOLVED.visible_to_volunteers


class TestResolution:

    def test_needs_both_parties(self):
        resolution = Resolution()
        assert not resolution.can_be_fully_resolved
        assert resolution.awaiting() is None

        resolution.record_attendee(utcnow())
        assert not resolution.can_be_fully_resolved
        assert resolution.awaiting() == 'volunteer'

        resolution.record_volunteer('v1', utcnow())
        assert resolution.can_be_fully_resolved
        assert resolution.awaiting() is None

    def test_first_volunteer_is_enough(self):
        resolution = Resolution()
        resolution.record_volunteer('v1', utcnow(), notes="handled")
        assert resolution.has_volunteer_completed
        assert resolution.awaiting() == 'attendee'

    def test_persisted_shape(self):
        resolution = Resolution()
        resolution.record_volunteer('v1', utcnow(), notes="done")
        data = resolution.to_dict()

        assert data['hasVolunteerCompleted'] is True
        assert data['attendee'] is False
        assert data['volunteerResolutions']['v1']['notes'] == "done"
        assert Resolution.from_dict(data).volunteer_resolutions['v1'].notes == "done"


class TestEmergencyDocument:

    def test_camel_case_document(self):
        emergency = Emergency(id='e1', reporter_id='r1', group_id='g1',
                              location=GeoPoint(1.0, 2.0), message="help")
        emergency.responses['v1'] = VolunteerResponse(volunteer_id='v1', volunteer_name="Vee",
                                                      status=VolunteerStatus.EN_ROUTE)
        data = emergency.to_dict()

        assert data['reporterId'] == 'r1'
        assert data['status'] == 'unverified'
        assert data['responses']['v1']['status'] == 'enRoute'
        assert data['location'] == {'latitude': 1.0, 'longitude': 2.0}
        assert data['notifications'] == []

    def test_from_dict_tolerates_sparse_documents(self):
        emergency = Emergency.from_dict({'reporterId': 'r1', 'status': 'inProgress'}, 'e9')
        assert emergency.id == 'e9'
        assert emergency.status is EmergencyStatus.IN_PROGRESS
        assert emergency.responses == {}
        assert not emergency.can_be_fully_resolved

    def test_engaged_responses_skip_unavailable(self):
        emergency = Emergency(id='e1', reporter_id='r1', group_id='g1', location=GeoPoint(0, 0))
        emergency.responses['v1'] = VolunteerResponse('v1', status=VolunteerStatus.ARRIVED)
        emergency.responses['v2'] = VolunteerResponse('v2', status=VolunteerStatus.UNAVAILABLE)
        assert [r.volunteer_id for r in emergency.engaged_responses] == ['v1']

    def test_notification_entry(self):
        when = utcnow() - timedelta(minutes=1)
        entry = AttendeeNotification(timestamp=when, volunteer_id='v1', volunteer_name="Vee",
                                     status='arrived', message="Vee has arrived",
                                     volunteer_location=GeoPoint(3.0, 4.0))
        restored = AttendeeNotification.from_dict(entry.to_dict())
        assert restored == entry


class TestMemberLocation:

    def test_document_id(self):
        assert MemberLocation.document_id('g1', 'u1') == 'g1:u1'

    def test_unknown_role_falls_back_to_attendee(self):
        member = MemberLocation.from_dict({'userId': 'u1', 'userRole': 'Wizard', 'latitude': 1, 'longitude': 2})
        assert member.role is UserRole.ATTENDEE
        assert member.location == GeoPoint(1.0, 2.0)

    def test_responder_roles(self):
        assert UserRole.VOLUNTEER.is_responder
        assert UserRole.ORGANIZER.is_responder
        assert not UserRole.ATTENDEE.is_responder
