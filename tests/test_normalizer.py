"""Tests for payload flattening, alias lookup and request normalisation."""

import json

import pytest

from normalizer import decode_body, extract_field, missing_required, normalize_payload, parse_form_payload
from schemas import TripRequest

EXPECTED = {'city': 'Paris', 'email': 'ana@example.com'}


class TestPayloadShapes:

    def test_flat_indexed_keys(self):
        body = {
            'fields[1][name]': 'email', 'fields[1][value]': ' ana@example.com ',
            'fields[0][name]': 'city',  'fields[0][value]': 'Paris',
        }
        assert parse_form_payload(body) == EXPECTED

    def test_fields_list(self):
        body = {'fields': [{'name': 'city', 'value': 'Paris'}, {'name': 'email', 'value': 'ana@example.com'}]}
        assert parse_form_payload(body) == EXPECTED

    def test_fields_mapping(self):
        body = {'fields': {'0': {'name': 'city', 'value': 'Paris'}, '1': {'name': 'email', 'value': 'ana@example.com'}}}
        assert parse_form_payload(body) == EXPECTED

    def test_direct_mapping_drops_bookkeeping_keys(self):
        body = {'city': 'Paris', 'email': 'ana@example.com', 'formid': 'form123', 'tranid': '42:1'}
        assert parse_form_payload(body) == EXPECTED

    @pytest.mark.parametrize('body', [None, {}, [], 'city=Paris'])
    def test_unusable_body_is_empty(self, body):
        assert parse_form_payload(body) == {}

    def test_fields_without_name_or_value_are_skipped(self):
        body = {'fields': [{'name': 'city'}, {'value': 'x'}, 'junk', {'name': 'email', 'value': 'a@b.co'}]}
        assert parse_form_payload(body) == {'email': 'a@b.co'}


class TestExtractField:

    def test_first_non_blank_alias_wins(self):
        assert extract_field({'city': ' ', 'destination': 'Rome'}, ('city', 'destination')) == 'Rome'

    def test_case_insensitive_fallback(self):
        assert extract_field({'DESTINATION_CITY': 'Rome'}, ('destination_city',)) == 'Rome'

    def test_missing(self):
        assert extract_field({'x': 'y'}, ('city',)) is None
        assert extract_field(None, ('city',)) is None


class TestNormalizePayload:

    def test_aliases_map_to_canonical_fields(self):
        request = normalize_payload({
            'Город': 'Lisbon', 'E-mail': 'ana@example.com', 'startDate': '2026-05-01',
            'end_date': '2026-05-04', 'бюджет': '1500 EUR', 'preferences': 'food',
            'travelers': '2', 'fullName': 'Ana', 'phone_number': '+351 1', 'comment': 'no stairs',
        })
        assert request == TripRequest(
            destination='Lisbon', recipient_email='ana@example.com', start_date='2026-05-01',
            end_date='2026-05-04', budget='1500 EUR', interests='food', people_count='2',
            recipient_name='Ana', phone='+351 1', notes='no stairs',
        )

    def test_people_defaults_to_one(self):
        assert normalize_payload({'city': 'Lisbon'}).people_count == '1'

    def test_whitespace_is_collapsed(self):
        assert normalize_payload({'city': '  New   York '}).destination == 'New York'

    def test_over_long_values_are_clipped(self):
        request = normalize_payload({'city': 'x' * 300, 'notes': 'n' * 5000})
        assert len(request.destination) == 100
        assert len(request.notes) == 2000

    def test_trip_days(self):
        request = normalize_payload({'city': 'Lisbon', 'start': '2026-05-01', 'end': '2026-05-04'})
        assert request.trip_days == 4
        assert normalize_payload({'city': 'Lisbon'}).trip_days == 1


class TestMissingRequired:

    def test_complete_request(self):
        assert missing_required(TripRequest(destination='Lisbon', recipient_email='ana@example.com')) == []

    def test_missing_both(self):
        assert missing_required(TripRequest()) == ['destination', 'recipient_email']

    def test_one_letter_city_and_bad_email(self):
        request = TripRequest(destination='X', recipient_email='not-an-email')
        assert missing_required(request) == ['destination', 'recipient_email']


class TestDecodeBody:

    def test_json(self):
        raw = json.dumps({'city': 'Paris'}).encode()
        assert decode_body(raw, 'application/json; charset=utf-8') == {'city': 'Paris'}

    def test_urlencoded(self):
        raw = b'fields%5B0%5D%5Bname%5D=city&fields%5B0%5D%5Bvalue%5D=Paris'
        assert decode_body(raw, 'application/x-www-form-urlencoded') == {
            'fields[0][name]': 'city', 'fields[0][value]': 'Paris',
        }

    def test_text_plain_json(self):
        assert decode_body(b'{"city": "Paris"}', 'text/plain') == {'city': 'Paris'}

    def test_text_plain_urlencoded(self):
        assert decode_body(b'city=Paris&email=a%40b.co', 'text/plain') == {'city': 'Paris', 'email': 'a@b.co'}

    @pytest.mark.parametrize('raw, ctype', [
        (b'', 'application/json'),
        (b'{broken', 'application/json'),
        (b'[1, 2]', 'application/json'),
    ])
    def test_undecodable_is_empty(self, raw, ctype):
        assert decode_body(raw, ctype) == {}
