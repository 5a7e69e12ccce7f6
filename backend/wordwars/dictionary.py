"""
=============================================================================
WORDLE WARS - Diccionario
=============================================================================
Fuente de palabras objetivo. Pool fijo de solo lectura, sin estado.
=============================================================================
"""

import secrets
from typing import Sequence, Tuple

from .config import GameRules


_RAW_WORDS = """
ABOUT ABOVE ABUSE ACTOR ACUTE ADMIT ADOPT ADULT AFTER AGAIN
AGENT AGREE AHEAD ALARM ALBUM ALERT ALIEN ALIGN ALIKE ALIVE
ALLOW ALONE ALONG ALTER AMONG ANGER ANGLE ANGRY APART APPLE
APPLY ARENA ARGUE ARISE ARRAY ASIDE ASSET AVOID AWAKE AWARD
AWARE BADLY BAKER BASIC BEACH BEGAN BEGIN BEING BELOW BENCH
BIRTH BLACK BLAME BLANK BLIND BLOCK BLOOD BOARD BOOST BOOTH
BOUND BRAIN BRAND BRASS BRAVE BREAD BREAK BREED BRIEF BRING
BROAD BROKE BROWN BUILD BUILT BUYER CABLE CARRY CATCH CAUSE
CHAIN CHAIR CHAOS CHARM CHART CHASE CHEAP CHECK CHEST CHIEF
CHILD CHOSE CIVIL CLAIM CLASS CLEAN CLEAR CLICK CLIMB CLOCK
CLOSE CLOUD COACH COAST COULD COUNT COURT COVER CRAFT CRASH
CRAZY CREAM CRIME CROSS CROWD CROWN CRUDE CURVE CYCLE DAILY
DANCE DATED DEALT DEATH DEBUT DELAY DEPTH DOING DOUBT DOZEN
DRAFT DRAMA DRANK DRAWN DREAM DRESS DRILL DRINK DRIVE DROVE
DYING EAGER EARLY EARTH EIGHT ELITE EMPTY ENEMY ENJOY ENTER
ENTRY EQUAL ERROR EVENT EVERY EXACT EXIST EXTRA FAITH FALSE
FAULT FIBER FIELD FIFTH FIFTY FIGHT FINAL FIRST FIXED FLASH
FLEET FLOOR FLUID FOCUS FORCE FORTH FORTY FORUM FOUND FRAME
FRAUD FRESH FRONT FROST FRUIT FULLY FUNNY GIANT GIVEN GLASS
GLOBE GOING GRACE GRADE GRAND GRANT GRASS GRAVE GREAT GREEN
GROSS GROUP GROWN GUARD GUESS GUEST GUIDE HAPPY HEART HEAVY
HORSE HOTEL HOUSE HUMAN IDEAL IMAGE INDEX INNER INPUT ISSUE
JOINT JUDGE KNOWN LABEL LARGE LASER LATER LAUGH LAYER LEARN
LEASE LEAST LEAVE LEGAL LEVEL LIGHT LIMIT LIVES LOCAL LOOSE
LOWER LUCKY LUNCH LYING MAGIC MAJOR MAKER MARCH MATCH MAYBE
MAYOR MEANT MEDIA METAL MIGHT MINOR MINUS MIXED MODEL MONEY
MONTH MORAL MOTOR MOUNT MOUSE MOUTH MOVED MOVIE MUSIC NEEDS
NEVER NEWLY NIGHT NOISE NORTH NOTED NOVEL NURSE OCCUR OCEAN
OFFER OFTEN ORDER OTHER OUGHT PAINT PANEL PAPER PARTY PEACE
PHASE PHONE PHOTO PIANO PIECE PILOT PITCH PLACE PLAIN PLANE
PLANT PLATE PLAZA POINT POUND POWER PRESS PRICE PRIDE PRIME
PRINT PRIOR PRIZE PROOF PROUD PROVE QUEEN QUICK QUIET QUITE
RADIO RAISE RANGE RAPID RATIO REACH READY REALM REFER RIGHT
RIVAL RIVER ROBOT ROUGH ROUND ROUTE ROYAL RURAL SCALE SCENE
SCOPE SCORE SENSE SERVE SEVEN SHALL SHAPE SHARE SHARP SHEET
SHELF SHELL SHIFT SHIRT SHOCK SHOOT SHORT SHOWN SIGHT SINCE
SIXTY SIZED SKILL SLEEP SLIDE SMALL SMART SMILE SMOKE SOLID
SOLVE SORRY SOUND SOUTH SPACE SPARE SPEAK SPEED SPEND SPENT
SPLIT SPOKE SPORT STAFF STAGE STAKE STAND START STATE STEAM
STEEL STICK STILL STOCK STONE STOOD STORE STORM STORY STRIP
STUCK STUDY STUFF STYLE SUGAR SUITE SUPER SWEET TABLE TAKEN
TASTE TEACH TEETH THANK THEFT THEIR THEME THERE THESE THICK
THING THINK THIRD THOSE THREE THREW THROW TIGHT TIMES TIRED
TITLE TODAY TOPIC TOTAL TOUCH TOUGH TOWER TRACK TRADE TRAIN
TREAT TREND TRIAL TRIED TRUCK TRULY TRUST TRUTH TWICE UNDER
UNDUE UNION UNITY UNTIL UPPER UPSET URBAN USAGE USUAL VALID
VALUE VIDEO VIRUS VISIT VITAL VOICE WASTE WATCH WATER WHEEL
WHERE WHICH WHILE WHITE WHOLE WHOSE WOMAN WORLD WORRY WORSE
WORST WORTH WOULD WOUND WRITE WRONG WROTE YIELD YOUNG YOUTH
"""

# Solo palabras de la longitud exacta del juego
WORDS: Tuple[str, ...] = tuple(
    word for word in _RAW_WORDS.split()
    if len(word) == GameRules.WORD_LENGTH and word.isalpha()
)


def pick_target(pool: Sequence[str] = WORDS) -> str:
    """Elige una palabra objetivo al azar (CSPRNG)."""
    return secrets.choice(pool)
