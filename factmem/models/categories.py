"""
Fixed category taxonomy plus per-owner dynamic category slots.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Pattern, Tuple

CATEGORY_NAME_PATTERN = re.compile(r'^[a-z][a-z0-9_]{2,47}$')


@dataclass(frozen=True)
class Category:
    """A topical partition that facts are routed into."""
    name: str
    description: str  # Embedded once to build the reference vector
    keywords: FrozenSet[str]
    patterns: Tuple[Pattern, ...] = ()
    weight: float = 1.0
    subcategory: str = 'General'
    dynamic: bool = False

    def to_document(self, owner_id: str) -> Dict:
        return {
            'owner_id': owner_id,
            'name': self.name,
            'description': self.description,
            'keywords': sorted(self.keywords),
            'subcategory': self.subcategory,
        }

    @classmethod
    def from_document(cls, document: Dict) -> 'Category':
        return cls(name=document['name'],
                   description=document.get('description', ''),
                   keywords=frozenset(k.lower() for k in document.get('keywords', [])),
                   subcategory=document.get('subcategory') or 'Custom',
                   dynamic=True)


def _category(name: str, description: str, subcategory: str, keywords: List[str], patterns: List[str]) -> Category:
    return Category(name=name,
                    description=description,
                    keywords=frozenset(keywords),
                    patterns=tuple(re.compile(p, re.IGNORECASE) for p in patterns),
                    subcategory=subcategory)


BASE_CATEGORIES: Tuple[Category, ...] = (
    _category('mental_emotional', 'Feelings, moods, stress, anxiety, therapy and mental health', 'General Emotional', [
        'stress', 'stressed', 'anxious', 'anxiety', 'worried', 'worry', 'feel', 'feeling', 'felt', 'emotion', 'emotional',
        'mood', 'mental', 'psychology', 'therapy', 'counseling', 'identity', 'self-talk', 'mindset', 'attitude',
        'perspective', 'overwhelmed', 'depressed', 'depression', 'bipolar', 'panic', 'fear', 'confidence', 'self-esteem'
    ], [
        r'\b(i feel|feeling|stressed|worried|anxious|emotional|mood|mental health|self-talk|overwhelmed)\b',
        r'\b(therapy|counseling|psychology|mindset|attitude|perspective|identity)\b',
        r'\b(depressed|depression|panic|fear|confidence|self-esteem|self-worth)\b',
    ]),
    _category('health_wellness', 'Physical health, doctors, medication, allergies, fitness, diet and sleep', 'General Health', [
        'health', 'healthy', 'medical', 'doctor', 'physician', 'symptom', 'symptoms', 'pain', 'illness', 'sick', 'disease',
        'medication', 'medicine', 'treatment', 'diagnosis', 'fitness', 'exercise', 'workout', 'gym', 'diet', 'nutrition',
        'sleep', 'sleeping', 'tired', 'fatigue', 'energy', 'hospital', 'clinic', 'allergy', 'allergic', 'dentist'
    ], [
        r'\b(health|medical|doctor|symptom|pain|illness|medication|fitness|exercise)\b',
        r'\b(diet|nutrition|sleep|energy|hospital|clinic|treatment|diagnosis)\b',
        r'\b(workout|gym|physical|allerg(y|ic|ies)|wellness)\b',
    ]),
    _category('relationships_social', 'Family, partners, friends, children, pets and social life', 'Social Life', [
        'family', 'spouse', 'husband', 'wife', 'partner', 'relationship', 'marriage', 'married', 'boyfriend', 'girlfriend',
        'children', 'child', 'kids', 'son', 'daughter', 'parents', 'mother', 'father', 'mom', 'dad', 'friend', 'friends',
        'social', 'friendship', 'conflict', 'argument', 'communication', 'love', 'dating', 'divorce', 'breakup', 'pets',
        'pet', 'dog', 'cat', 'sister', 'brother'
    ], [
        r'\b(family|spouse|husband|wife|partner|relationship|marriage|children|kids)\b',
        r'\b(parents|mother|father|mom|dad|friend|social|dating|love)\b',
        r'\b(conflict|argument|communication|divorce|breakup|pets|pet)\b',
    ]),
    _category('work_career', 'Job, employer, career, colleagues, projects, meetings and clients', 'General Work', [
        'work', 'working', 'job', 'career', 'profession', 'business', 'company', 'corporation', 'office', 'workplace',
        'project', 'meeting', 'boss', 'manager', 'supervisor', 'employee', 'colleague', 'coworker', 'team', 'department',
        'salary', 'wage', 'promotion', 'performance', 'deadline', 'client', 'customer', 'interview', 'worked', 'employer'
    ], [
        r'\b(work|job|career|business|company|office|project|meeting|boss)\b',
        r'\b(employee|colleague|team|salary|promotion|performance|deadline|client)\b',
        r'\b(interview|workplace|profession|manager|supervisor)\b',
    ]),
    _category('money_income_debt', 'Income, salary, debt, loans, credit, mortgage and bills', 'Income & Debt', [
        'income', 'salary', 'wage', 'pay', 'paycheck', 'earnings', 'debt', 'loan', 'loans', 'credit', 'mortgage', 'payment',
        'payments', 'bill', 'bills', 'owe', 'owing', 'broke', 'bankruptcy', 'foreclosure'
    ], [
        r'\b(income|salary|wage|pay|paycheck|earnings|debt|loan|credit)\b',
        r'\b(mortgage|payment|bill|owe|financial crisis|money problems|broke)\b',
        r'\b(bankruptcy|foreclosure|financial trouble)\b',
    ]),
    _category('money_spending_goals', 'Budgets, spending, purchases, savings and investments', 'Spending & Goals', [
        'budget', 'budgeting', 'spending', 'spend', 'purchase', 'buy', 'buying', 'savings', 'save', 'saving', 'investment',
        'investing', 'stocks', 'portfolio', 'retirement', 'wealth', 'price', 'cost'
    ], [
        r'\b(budget|spending|purchase|buy|savings|save|financial goals|investment)\b',
        r'\b(investing|stocks|portfolio|retirement|wealth|money management)\b',
        r'\b(financial planning|emergency fund|budgeting)\b',
    ]),
    _category('goals_active_current', 'Goals and tasks currently being worked on', 'Current Goals', [
        'goal', 'goals', 'objective', 'target', 'aim', 'task', 'deadline', 'priority', 'focus', 'achievement', 'accomplish',
        'complete', 'finish'
    ], [
        r'\b(goal|goals|current goal|objective|target|working on|trying to)\b',
        r'\b(this week|this month|priority|focus|achievement|accomplish)\b',
        r'\b(complete|finish|deadline|task|project)\b',
    ]),
    _category('goals_future_dreams', 'Long-term dreams, aspirations and future plans', 'Future Dreams', [
        'dream', 'dreams', 'someday', 'future', 'long-term', 'vision', 'aspiration', 'aspirations', 'hope', 'wish',
        'eventually', 'retirement', 'legacy', 'ambition'
    ], [
        r'\b(dream|someday|future|long-term|vision|aspiration|bucket list)\b',
        r'\b(hope|wish|want to|plan to|eventually|retirement|legacy)\b',
        r'\b(life goals|ambition|life dream|future plan)\b',
    ]),
    _category('tools_tech_workflow', 'Software, apps, devices, accounts and productivity workflows', 'Digital Tools', [
        'software', 'app', 'application', 'tool', 'tools', 'technology', 'tech', 'system', 'platform', 'website', 'digital',
        'online', 'computer', 'laptop', 'phone', 'workflow', 'process', 'automation', 'productivity', 'efficiency',
        'program', 'password', 'account', 'email'
    ], [
        r'\b(software|app|tool|technology|system|platform|website|digital)\b',
        r'\b(computer|laptop|phone|workflow|automation|productivity|efficiency)\b',
        r'\b(program|application|online|process)\b',
    ]),
    _category('daily_routines_habits', 'Daily routines, habits, schedules and rituals', 'Daily Schedule', [
        'routine', 'routines', 'habit', 'habits', 'daily', 'morning', 'evening', 'night', 'schedule', 'consistency',
        'regular', 'weekly', 'pattern', 'ritual', 'practice', 'discipline', 'structure', 'organization'
    ], [
        r'\b(routine|habit|daily|morning|evening|schedule|consistency)\b',
        r'\b(regular|every day|weekly|pattern|ritual|practice|discipline)\b',
        r'\b(structure|organization|time management)\b',
    ]),
    _category('personal_life_interests', 'Home, hobbies, interests, travel, entertainment and personal details', 'General Personal', [
        'home', 'house', 'apartment', 'living', 'lifestyle', 'personal', 'hobby', 'hobbies', 'interest', 'interests',
        'entertainment', 'fun', 'leisure', 'gaming', 'games', 'creative', 'art', 'music', 'reading', 'books', 'movies', 'tv',
        'travel', 'vacation', 'sports', 'cooking', 'food', 'garden', 'gardening', 'favorite', 'favourite'
    ], [
        r'\b(home|house|apartment|lifestyle|hobby|interest|entertainment|fun)\b',
        r'\b(gaming|creative|art|music|reading|movies|travel|vacation|sports)\b',
        r'\b(cooking|garden|personal|leisure|activity)\b',
    ]),
)

BASE_CATEGORY_NAMES: FrozenSet[str] = frozenset(c.name for c in BASE_CATEGORIES)
_BASE_BY_NAME: Dict[str, Category] = {c.name: c for c in BASE_CATEGORIES}


def get_base_category(name: str) -> Optional[Category]:
    return _BASE_BY_NAME.get(name)


def validate_dynamic_category(name: str, existing: List[Category], max_dynamic: int) -> Optional[str]:
    """Check a dynamic category registration.

    Args:
        name: Proposed category name
        existing: The owner's already registered dynamic categories
        max_dynamic: Maximum number of dynamic slots per owner

    Returns:
        An error message, or None if the registration is valid
    """
    if not CATEGORY_NAME_PATTERN.match(name or ''):
        return f'Invalid category name: {name!r}'
    if name in BASE_CATEGORY_NAMES:
        return f'Category {name} is part of the fixed taxonomy'
    if any(c.name == name for c in existing):
        return None
    if len(existing) >= max_dynamic:
        return f'Dynamic category limit of {max_dynamic} reached'
    return None


@dataclass
class CategorySet:
    """The categories visible to one owner for a single routing call."""
    dynamic: List[Category] = field(default_factory=list)

    def all(self) -> List[Category]:
        return list(BASE_CATEGORIES) + list(self.dynamic)

    def names(self) -> List[str]:
        return [c.name for c in self.all()]

    def get(self, name: str) -> Optional[Category]:
        for category in self.all():
            if category.name == name:
                return category
        return None
