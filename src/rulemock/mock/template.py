"""
rulemock Data Templates

Expands Mock.js-style data templates into randomized JSON using Faker.

Template keys may carry a generation rule after ``|``:
- ``'list|1-5': [...]``   repeat the array items 1..5 times
- ``'count|1-100': 1``    random integer in range
- ``'price|1-100.2': 1``  random float with 2 decimals
- ``'id|+1': 1``          incrementing value across one expansion
- ``'flag|1': true``      random boolean
- ``'pick|1': [a, b]``    one element of the array
- ``'obj|2': {...}``      two random properties of the object

String values may hold ``@placeholder`` tokens (``@name``, ``@email``,
``@integer(1, 10)``, ``@datetime("yyyy-MM-dd HH:mm:ss")`` ...). A string that is
exactly one placeholder keeps the generated value's type.

Example:
    template = DataTemplate(seed=42)
    data = template.expand({'users|2': [{'id|+1': 1, 'name': '@name'}]})
"""

import ast
import json
import re
import string
from datetime import datetime, timedelta
from typing import List, Dict, Any, Optional, Callable

from faker import Faker


RULE_KEY_RE = re.compile(r'^(?P<name>.+?)\|(?P<rule>.+)$')
RANGE_RULE_RE = re.compile(
    r'^(?P<min>\d+)(?:-(?P<max>\d+))?(?:\.(?P<dmin>\d+)(?:-(?P<dmax>\d+))?)?$'
)
STEP_RULE_RE = re.compile(r'^\+(?P<step>\d+)$')
PLACEHOLDER_RE = re.compile(r'@([a-zA-Z_][a-zA-Z0-9_]*)(?:\(([^()]*)\))?')

STRING_POOLS = {
    'lower': string.ascii_lowercase,
    'upper': string.ascii_uppercase,
    'number': string.digits,
    'symbol': '!@#$%^&*()[]',
}
STRING_POOLS['alpha'] = STRING_POOLS['lower'] + STRING_POOLS['upper']

# Mock.js date tokens, longest first
DATE_TOKENS = [
    ('yyyy', '%Y'), ('yy', '%y'), ('MM', '%m'), ('dd', '%d'),
    ('HH', '%H'), ('hh', '%I'), ('mm', '%M'), ('ss', '%S'), ('A', '%p'),
]


def to_strftime(pattern: str) -> str:
    """Convert a Mock.js date pattern (``yyyy-MM-dd``) to strftime syntax."""
    result = []
    i = 0
    while i < len(pattern):
        for token, directive in DATE_TOKENS:
            if pattern.startswith(token, i):
                result.append(directive)
                i += len(token)
                break
        else:
            result.append(pattern[i].replace('%', '%%'))
            i += 1
    return ''.join(result)


def parse_placeholder_args(raw: Optional[str]) -> List[Any]:
    """Parse ``"a", 1, true`` into Python values."""
    if raw is None or not raw.strip():
        return []
    try:
        parsed = ast.literal_eval(f'[{raw}]')
        return list(parsed)
    except (ValueError, SyntaxError):
        pass

    args: List[Any] = []
    for part in raw.split(','):
        part = part.strip().strip('\'"')
        if part in ('true', 'false'):
            args.append(part == 'true')
        else:
            try:
                args.append(int(part))
            except ValueError:
                try:
                    args.append(float(part))
                except ValueError:
                    args.append(part)
    return args


class DataTemplate:
    """
    Mock.js-compatible template expander.

    ``+step`` counters start over on every ``expand`` call. ``@increment``
    lives on the instance, so one expander shared across requests keeps
    incrementing it.
    """

    def __init__(self, locale: str = 'en_US', seed: Optional[int] = None, faker: Optional[Faker] = None):
        """
        Initialize expander.

        Args:
            locale: Faker locale for names, addresses and text
            seed: Optional seed for reproducible output
            faker: Pre-built Faker instance (overrides locale/seed)
        """
        self.faker = faker or Faker(locale)
        if seed is not None and faker is None:
            self.faker.seed_instance(seed)
        self._cn_faker: Optional[Faker] = None
        self._seed = seed
        self._counters: Dict[str, Any] = {}
        self._increment = 0
        self._placeholders: Dict[str, Callable[..., Any]] = self._build_placeholders()

    @property
    def random(self):
        return self.faker.random

    @property
    def cn(self) -> Faker:
        """Chinese-locale Faker used by the ``@c*`` placeholders."""
        if self._cn_faker is None:
            self._cn_faker = Faker('zh_CN')
            if self._seed is not None:
                self._cn_faker.seed_instance(self._seed)
        return self._cn_faker

    # Entry points

    def expand_text(self, text: str) -> Any:
        """
        Parse a JSON template string and expand it.

        Raises:
            ValueError: If the text is not valid JSON
        """
        return self.expand(json.loads(text))

    def expand(self, template: Any) -> Any:
        """Expand a template value (dict, list, string or scalar)."""
        self._counters = {}
        return self._expand(template, '')

    def _expand(self, template: Any, path: str) -> Any:
        if isinstance(template, dict):
            return self._expand_object(template, path)
        if isinstance(template, list):
            return [self._expand(item, path) for item in template]
        if isinstance(template, str):
            return self.expand_string(template)
        return template

    # Objects and rules

    def _expand_object(self, template: Dict[str, Any], path: str) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for raw_key, value in template.items():
            match = RULE_KEY_RE.match(str(raw_key))
            if match:
                name, rule = match.group('name'), match.group('rule')
            else:
                name, rule = str(raw_key), None
            key_path = f'{path}.{name}'
            result[name] = self._apply_rule(value, rule, key_path)
        return result

    def _apply_rule(self, value: Any, rule: Optional[str], key_path: str) -> Any:
        if rule is None:
            return self._expand(value, key_path)

        step = STEP_RULE_RE.match(rule)
        if step:
            return self._apply_step(value, int(step.group('step')), key_path)

        ranged = RANGE_RULE_RE.match(rule)
        if not ranged:
            return self._expand(value, key_path)

        low = int(ranged.group('min'))
        high = int(ranged.group('max')) if ranged.group('max') else None
        count = self.random.randint(low, high) if high is not None and high >= low else low

        if isinstance(value, bool):
            if high is None:
                return self.random.random() < 0.5
            return value if self.random.random() < low / float(low + high or 1) else not value

        if isinstance(value, (int, float)):
            if ranged.group('dmin') is not None:
                dmin = int(ranged.group('dmin'))
                dmax = int(ranged.group('dmax')) if ranged.group('dmax') else dmin
                decimals = self.random.randint(dmin, max(dmin, dmax))
                fraction = self.random.random()
                return round(count + fraction, decimals) if decimals else float(count)
            return count

        if isinstance(value, str):
            return ''.join(self.expand_string(value) for _ in range(count))

        if isinstance(value, list):
            if not value:
                return []
            if high is None and low == 1:
                return self._expand(self.random.choice(value), key_path)
            items: List[Any] = []
            for _ in range(count):
                items.extend(self._expand(item, key_path) for item in value)
            return items

        if isinstance(value, dict):
            keys = list(value.keys())
            size = min(count, len(keys))
            chosen = set(self.random.sample(keys, size))
            picked = {k: v for k, v in value.items() if k in chosen}
            return self._expand_object(picked, key_path)

        return value

    def _apply_step(self, value: Any, step: int, key_path: str) -> Any:
        if isinstance(value, list):
            if not value:
                return []
            index = self._counters.get(key_path, -step) + step
            self._counters[key_path] = index
            return self._expand(value[index % len(value)], key_path)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            current = self._counters.get(key_path)
            current = value if current is None else current + step
            self._counters[key_path] = current
            return current
        return self._expand(value, key_path)

    # Placeholders

    def expand_string(self, text: str) -> Any:
        """Replace ``@placeholder`` tokens in ``text``."""
        whole = PLACEHOLDER_RE.fullmatch(text)
        if whole:
            generated = self._call_placeholder(whole.group(1), whole.group(2))
            return text if generated is None else generated

        def replace(match):
            generated = self._call_placeholder(match.group(1), match.group(2))
            if generated is None:
                return match.group(0)
            if isinstance(generated, bool):
                return 'true' if generated else 'false'
            return str(generated)

        return PLACEHOLDER_RE.sub(replace, text)

    def _call_placeholder(self, name: str, raw_args: Optional[str]) -> Any:
        handler = self._placeholders.get(name.lower())
        if handler is None:
            return None
        return handler(*parse_placeholder_args(raw_args))

    def _build_placeholders(self) -> Dict[str, Callable[..., Any]]:
        f = self.faker
        return {
            # Basics
            'boolean': lambda *a: self.random.random() < 0.5,
            'bool': lambda *a: self.random.random() < 0.5,
            'natural': lambda low=0, high=9007199254740991: self.random.randint(int(low), int(high)),
            'integer': lambda low=-9007199254740991, high=9007199254740991: self.random.randint(int(low), int(high)),
            'float': self._float,
            'character': lambda pool='alpha': self.random.choice(STRING_POOLS.get(pool, pool) or 'a'),
            'string': self._string,
            'pick': lambda *items: self.random.choice(items) if items else None,
            # Dates
            'date': lambda fmt='yyyy-MM-dd': self._random_datetime().strftime(to_strftime(fmt)),
            'time': lambda fmt='HH:mm:ss': self._random_datetime().strftime(to_strftime(fmt)),
            'datetime': lambda fmt='yyyy-MM-dd HH:mm:ss': self._random_datetime().strftime(to_strftime(fmt)),
            'now': self._now,
            # Media
            'image': lambda size='200x200', *a: f'https://dummyimage.com/{size}',
            'color': lambda *a: f.hex_color(),
            'hex': lambda *a: f.hex_color(),
            # Text
            'word': lambda *a: f.word(),
            'sentence': lambda *a: f.sentence(),
            'paragraph': lambda *a: f.paragraph(),
            'title': lambda *a: f.sentence(nb_words=4).rstrip('.').title(),
            'cword': lambda *a: self.cn.word(),
            'csentence': lambda *a: self.cn.sentence(),
            'cparagraph': lambda *a: self.cn.paragraph(),
            'ctitle': lambda *a: self.cn.sentence(nb_words=3).rstrip('。.'),
            # Names
            'first': lambda *a: f.first_name(),
            'last': lambda *a: f.last_name(),
            'name': lambda *a: f.name(),
            'cfirst': lambda *a: self.cn.last_name(),
            'clast': lambda *a: self.cn.first_name(),
            'cname': lambda *a: self.cn.name(),
            # Web
            'url': lambda *a: f.url(),
            'domain': lambda *a: f.domain_name(),
            'protocol': lambda *a: self.random.choice(['http', 'https', 'ftp', 'ws', 'wss']),
            'tld': lambda *a: f.tld(),
            'email': lambda *a: f.email(),
            'ip': lambda *a: f.ipv4(),
            # Address
            'region': lambda *a: self._address('state'),
            'province': lambda *a: self._address('state'),
            'city': lambda *a: f.city(),
            'county': lambda *a: self._address('street_name'),
            'zip': lambda *a: f.postcode(),
            'address': lambda *a: f.address().replace('\n', ', '),
            'phone': lambda *a: f.phone_number(),
            # Misc
            'guid': lambda *a: f.uuid4(),
            'uuid': lambda *a: f.uuid4(),
            'id': lambda *a: ''.join(self.random.choice(string.digits) for _ in range(18)),
            'increment': self._next_increment,
        }

    def _float(self, low=-9007199254740991, high=9007199254740991, dmin=0, dmax=17):
        decimals = self.random.randint(int(dmin), int(max(dmin, dmax)))
        value = self.random.randint(int(low), int(high)) + self.random.random()
        return round(value, decimals) if decimals else float(int(value))

    def _string(self, *args):
        pool = STRING_POOLS['alpha']
        if args and isinstance(args[0], str):
            pool = STRING_POOLS.get(args[0], args[0]) or pool
            args = args[1:]
        if len(args) >= 2:
            length = self.random.randint(int(args[0]), int(args[1]))
        elif len(args) == 1:
            length = int(args[0])
        else:
            length = self.random.randint(3, 7)
        return ''.join(self.random.choice(pool) for _ in range(length))

    def _random_datetime(self) -> datetime:
        return self.faker.date_time_between(start_date='-30y', end_date='+1y')

    def _now(self, *args):
        fmt = 'yyyy-MM-dd HH:mm:ss'
        units = ('year', 'month', 'week', 'day', 'hour', 'minute', 'second')
        now = datetime.now()
        for arg in args:
            if isinstance(arg, str) and arg in units:
                if arg == 'year':
                    now = now.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
                elif arg == 'month':
                    now = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
                elif arg == 'week':
                    now = (now - timedelta(days=now.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
                elif arg == 'day':
                    now = now.replace(hour=0, minute=0, second=0, microsecond=0)
                elif arg == 'hour':
                    now = now.replace(minute=0, second=0, microsecond=0)
                elif arg == 'minute':
                    now = now.replace(second=0, microsecond=0)
                else:
                    now = now.replace(microsecond=0)
            elif isinstance(arg, str):
                fmt = arg
        return now.strftime(to_strftime(fmt))

    def _address(self, attribute: str) -> str:
        try:
            return getattr(self.faker, attribute)()
        except AttributeError:
            return self.faker.city()

    def _next_increment(self, step=1):
        self._increment += int(step)
        return self._increment
