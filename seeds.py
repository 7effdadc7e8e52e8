"""Sample records written into empty collections on first start."""

from datetime import datetime, timedelta, timezone

_now = datetime.now(timezone.utc).replace(microsecond=0)

FOLDERS = [
    {"id": "exam_f1", "name": "SSC Live Exams", "description": "Scheduled exams for SSC candidates", "type": "EXAM"},
    {"id": "exam_f2", "name": "HSC Practice", "description": "Practice exams for HSC", "type": "EXAM"},
    {"id": "f1", "name": "Physics", "description": "Mechanics and waves", "type": "CONTENT", "target_class": "Class 10"},
]

EXAMS = [
    {
        "id": "e1",
        "folder_id": "exam_f1",
        "title": "Physics Live Challenge (SSC)",
        "type": "LIVE",
        "exam_format": "MCQ",
        "duration_minutes": 10,
        "total_marks": 20,
        "questions_count": 4,
        "start_time": (_now + timedelta(days=1)).isoformat(),
        "negative_marks": 0.25,
        "is_published": True,
        "question_list": [
            {"id": "q1", "text": "What is the unit of Force?", "marks": 5, "type": "MCQ",
             "options": ["Joule", "Newton", "Pascal", "Watt"], "correct_option": 1},
            {"id": "q2", "text": "Rate of change of momentum is?", "marks": 5, "type": "MCQ",
             "options": ["Force", "Energy", "Power", "Impulse"], "correct_option": 0},
            {"id": "q3", "text": "Which is a vector quantity?", "marks": 5, "type": "MCQ",
             "options": ["Mass", "Time", "Velocity", "Speed"], "correct_option": 2},
            {"id": "q4", "text": "Value of g on earth surface?", "marks": 5, "type": "MCQ",
             "options": ["9.8 ms-2", "10 ms-1", "9.8 ms-1", "8.9 ms-2"], "correct_option": 0},
        ],
    },
    {
        "id": "e2",
        "folder_id": "exam_f2",
        "title": "Organic Chem Test (HSC)",
        "type": "GENERAL",
        "exam_format": "MCQ",
        "duration_minutes": 5,
        "total_marks": 10,
        "questions_count": 2,
        "is_published": True,
        "question_list": [
            {"id": "gk1", "text": "Benzene is?", "marks": 5, "type": "MCQ",
             "options": ["Alkane", "Aromatic", "Alkene", "None"], "correct_option": 1},
            {"id": "gk2", "text": "Formula of Methane?", "marks": 5, "type": "MCQ",
             "options": ["CH3", "CH4", "C2H6", "C2H4"], "correct_option": 1},
        ],
    },
    {
        "id": "e3",
        "folder_id": "exam_f2",
        "title": "Math Written Test (Algebra)",
        "type": "GENERAL",
        "exam_format": "WRITTEN",
        "duration_minutes": 30,
        "total_marks": 50,
        "questions_count": 2,
        "is_published": True,
        "question_list": [
            {"id": "w1", "text": "Prove that (a+b)^2 = a^2 + 2ab + b^2", "marks": 25, "type": "WRITTEN"},
            {"id": "w2", "text": "Solve for x: 2x + 5 = 15", "marks": 25, "type": "WRITTEN"},
        ],
    },
]

USERS = [
    {"id": "admin1", "name": "Super Admin", "email": "admin@example.com", "role": "ADMIN"},
    {"id": "student1", "name": "Rahim Ahmed", "email": "rahim@example.com", "role": "STUDENT",
     "target_class": "Class 10", "points": 1250},
    {"id": "student2", "name": "Karim Uddin", "email": "karim@example.com", "role": "STUDENT",
     "target_class": "HSC (Class 12)", "points": 980},
]

SUBMISSIONS = [
    {
        "id": "sub_1",
        "exam_id": "e3",
        "student_id": "student1",
        "student_name": "Rahim Ahmed",
        "submitted_at": (_now - timedelta(days=1)).isoformat(),
        "status": "PENDING",
        "obtained_marks": 0,
        "answers": [
            {"question_id": "w1", "written_images": ["https://picsum.photos/seed/w1/400/600"]},
            {"question_id": "w2", "written_images": ["https://picsum.photos/seed/w2/400/600"]},
        ],
    },
]

NOTICES = [
    {"id": "n1", "title": "Eid Vacation", "date": _now.isoformat(),
     "content": "The platform will run on a reduced schedule during the holidays.", "priority": "HIGH"},
]

SEED_DATA = {
    "folders": FOLDERS,
    "exams": EXAMS,
    "users": USERS,
    "submissions": SUBMISSIONS,
    "notices": NOTICES,
}
